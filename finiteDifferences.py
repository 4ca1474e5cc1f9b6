import numpy as np
import sigpy as sp


def CentralDifference(ishape, axes=None):
    """Linear operator that computes (central) finite differences.

    Returns f[i + 1] - f[i - 1] stacked along a new leading axis, so the
    derivative is half the output. Boundaries wrap around and need fixing
    by the caller (see gradient).

    Args:
        ishape (tuple of ints): Input shape.
        axes (tuple or list): Axes to circularly shift. All axes are used if
            None.

    """
    ndim = len(ishape)
    axes = sp.util._normalize_axes(axes, ndim)
    linops = []
    for i in axes:
        D = sp.linop.Circshift(ishape, [-1], axes=[i]) - sp.linop.Circshift(
            ishape, [1], axes=[i]
        )
        R = sp.linop.Reshape([1] + list(ishape), ishape)
        linops.append(R * D)

    G = sp.linop.Vstack(linops, axis=0)

    return G


def voxelGradient(arrIn, device=-1):
    """
    Gradient of arrIn along its first three axes in voxel units, shape (3,) + arrIn.shape.
    Central differences inside, one-sided differences on the boundary,
    zero along axes of length one.
    """
    xp = sp.Device(device).xp
    D = CentralDifference(arrIn.shape, axes=(0, 1, 2))
    grad = 0.5 * (D * arrIn)
    for axis in range(3):
        n = arrIn.shape[axis]
        g = grad[axis]
        if n == 1:
            g[...] = 0.0
            continue
        first = [slice(None)] * arrIn.ndim
        last = [slice(None)] * arrIn.ndim
        first[axis] = 0
        last[axis] = n - 1
        g[tuple(first)] = xp.take(arrIn, 1, axis=axis) - xp.take(arrIn, 0, axis=axis)
        g[tuple(last)] = xp.take(arrIn, n - 1, axis=axis) - xp.take(arrIn, n - 2, axis=axis)
    return grad


def gradient(arrIn, affine, device=-1):
    """
    Spatial gradient in world units (intensity / mm along world axes).

    Args:
        arrIn (array): Scalar volume of shape (nx, ny, nz) or (nx, ny, nz, nt).
        affine (array): 4x4 voxel to world matrix of the volume.
    """
    xp = sp.Device(device).xp
    grad = voxelGradient(arrIn, device=device)
    # d/dworld = inv(A)^T d/dvoxel
    M = xp.asarray(np.linalg.inv(affine[:3, :3]).T)
    return xp.tensordot(M, grad, axes=1)
