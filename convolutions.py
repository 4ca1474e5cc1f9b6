# CPU path uses scipy, GPU path the cupyx port of the same routines.
from scipy import ndimage as npTools


def ndimage(device=-1):
    if device == -1:
        return npTools
    from cupyx.scipy import ndimage as cpTools

    return cpTools


def convolve1d(filt, arrIn, axis, device=-1):
    """
    1D convolution of arrIn with filt along axis.
    Edges are extended with the nearest sample so constant fields stay constant.
    """
    if arrIn.shape[axis] == 1:
        return arrIn.copy()
    return ndimage(device).convolve1d(arrIn, filt, axis=axis, mode="nearest")
