import logging
import math

import numpy as np
import sigpy as sp

from registrationParameters import MIN_GREY

logger = logging.getLogger(__name__)


def guessResolution(*sizes):
    # Largest voxel dimension
    return float(max(sizes))


def guessPadding(volume):
    """
    Padding value of a volume: the corner value if all eight corners agree,
    otherwise MIN_GREY (no padding).
    """
    data = sp.to_device(volume.data[..., 0], -1)
    nx, ny, nz = data.shape
    corners = [data[x, y, z] for x in (0, nx - 1) for y in (0, ny - 1) for z in (0, nz - 1)]
    if all(c == corners[0] for c in corners):
        return float(corners[0])
    return float(MIN_GREY)


def markPassiveControlPoints(volume, padding, ffd):
    """
    Sets control points whose support contains no foreground voxel (> padding)
    in any frame to passive. Returns the number of passive control points.
    """
    data = sp.to_device(volume.data, -1)
    foreground = np.any(data > padding, axis=3)
    # Summed-area table with a leading zero plane, box counts in O(1) each
    table = np.zeros(tuple(n + 1 for n in foreground.shape), dtype=np.int64)
    table[1:, 1:, 1:] = foreground.cumsum(0).cumsum(1).cumsum(2)
    lo, hi = ffd.boundingBoxes(volume)
    x1, y1, z1 = lo
    x2, y2, z2 = hi + 1
    count = (
        table[x2, y2, z2]
        - table[x1, y2, z2]
        - table[x2, y1, z2]
        - table[x2, y2, z1]
        + table[x1, y1, z2]
        + table[x1, y2, z1]
        + table[x2, y1, z1]
        - table[x1, y1, z1]
    )
    empty = count == 0
    ffd.active[empty] = False
    passive = int(np.count_nonzero(empty))
    logger.debug(
        "{} of {} control points are passive".format(passive, ffd.numberOfControlPoints)
    )
    return passive


def calculateNumberOfBins(volumes, maxbin, minValue, maxValue):
    """
    Picks the smallest integer bin width so that the range [minValue, maxValue]
    fits in maxbin bins, and rescales positive intensities of volumes in place.
    maxbin <= 0 keeps unit width. Returns the number of bins.
    """
    intensityRange = maxValue - minValue + 1
    width = 1
    if maxbin > 0:
        while math.ceil(intensityRange / width) > maxbin:
            width += 1
    nbins = math.ceil(intensityRange / width)
    logger.info("Using {} bin(s) with width {}".format(nbins, width))

    for volume in volumes:
        xp = volume.xp
        positive = volume.data > 0
        volume.data[positive] = xp.floor(volume.data[positive] / width)
    return nbins
