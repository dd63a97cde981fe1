"""
Face alignment from 5-point landmarks.

Warps a face onto a canonical template (eyes, nose tip, mouth corners) so
appearance features are computed on a consistently framed crop.
"""

import numpy as np
import cv2
from typing import Optional


# Canonical landmark positions for a 112x112 crop
TEMPLATE_112 = np.array(
    [
        [38.2946, 51.6963],  # left eye
        [73.5318, 51.5014],  # right eye
        [56.0252, 71.7366],  # nose tip
        [41.5493, 92.3655],  # left mouth corner
        [70.7299, 92.2041],  # right mouth corner
    ],
    dtype=np.float32,
)


def template_for_size(size: int) -> np.ndarray:
    """Template scaled to a square crop of `size` pixels."""
    return TEMPLATE_112 * (size / 112.0)


def estimate_similarity_transform(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """
    Least-squares similarity transform (rotation, uniform scale, translation)
    mapping src points onto dst points (Umeyama).

    Returns:
        2x3 float32 matrix
    """
    num = src.shape[0]

    src_mean = src.mean(axis=0)
    dst_mean = dst.mean(axis=0)
    src_demean = src - src_mean
    dst_demean = dst - dst_mean

    A = (dst_demean.T @ src_demean) / num
    U, S, Vt = np.linalg.svd(A)

    # Keep a proper rotation (no reflection)
    d = np.linalg.det(U @ Vt)
    D = np.diag([1.0, 1.0 if d >= 0 else -1.0])
    R = U @ D @ Vt

    src_var = (src_demean ** 2).sum() / num
    scale = np.sum(S * np.diag(D)) / src_var if src_var > 0 else 1.0
    t = dst_mean - scale * (R @ src_mean)

    M = np.zeros((2, 3), dtype=np.float32)
    M[:2, :2] = scale * R
    M[:, 2] = t
    return M


def align_face(
    image: np.ndarray,
    landmarks: np.ndarray,
    size: int = 112,
) -> Optional[np.ndarray]:
    """
    Aligned square face crop, or None when fewer than 5 landmarks are given.

    Args:
        image: BGR or grayscale frame
        landmarks: 5x2 (left eye, right eye, nose, left mouth, right mouth)
        size: output edge length in pixels
    """
    if landmarks is None or len(landmarks) < 5:
        return None

    src = np.asarray(landmarks[:5], dtype=np.float32).reshape(5, 2)
    M = estimate_similarity_transform(src, template_for_size(size))

    return cv2.warpAffine(
        image, M, (size, size),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0,
    )
