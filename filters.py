import math

import sigpy as sp
import convolutions as conv


def gaussianKernel1d(sigma=1.0, device=-1):
    # Generates normalized Gaussian kernel. Kernel truncated at 3 * sigma
    # Round to next odd integer
    xp = sp.Device(device).xp
    N = 2 * math.ceil(3.0 * sigma) + 1
    if N < 3:
        N = 3
    x = xp.linspace(0, N - 1, N)
    alpha = 0.5 * (N - 1) / sigma
    k1d = xp.exp(-0.5 * (alpha * (x - (N - 1) / 2) / ((N - 1) / 2)) ** 2)
    return k1d / xp.sum(k1d)


def gaussianSmooth(arrIn, sigmas, device=-1):
    """
    Separable Gaussian smoothing of the leading spatial axes of arrIn.

    Args:
        arrIn (array): Input of shape (nx, ny, nz, ...).
        sigmas (tuple of floats): Standard deviation in voxels per spatial axis.
            Axes with zero sigma are left untouched.
    """
    arrOut = arrIn
    for axis, sigma in enumerate(sigmas):
        if sigma <= 0.0:
            continue
        arrOut = conv.convolve1d(gaussianKernel1d(sigma, device=device), arrOut, axis, device=device)
    return arrOut


def maskedGaussianSmooth(arrIn, mask, sigmas, padding, device=-1):
    """
    Normalized convolution: only voxels inside mask contribute,
    voxels outside mask are set to padding.
    """
    xp = sp.Device(device).xp
    weights = gaussianSmooth(mask.astype(xp.float64), sigmas, device=device)
    values = gaussianSmooth(xp.where(mask, arrIn, 0.0), sigmas, device=device)
    out = xp.full(arrIn.shape, float(padding))
    valid = mask & (weights > 0.0)
    out[valid] = values[valid] / weights[valid]
    return out
