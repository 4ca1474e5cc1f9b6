from collections import namedtuple
from enum import Enum

import sigpy as sp

import convolutions as conv

GRID_TOLERANCE = 1e-6


class InterpolationMode(Enum):
    NN = "NN"
    Linear = "Linear"
    BSpline = "BSpline"

    @property
    def order(self):
        return {"NN": 0, "Linear": 1, "BSpline": 3}[self.value]

    @property
    def margin(self):
        # Distance from the grid edge inside which samples need no boundary handling
        return {"NN": 0.0, "Linear": 0.0, "BSpline": 1.0}[self.value]


def interpolationMode(value):
    if isinstance(value, InterpolationMode):
        return value
    for mode in InterpolationMode:
        if mode.value.lower() == str(value).strip().lower():
            return mode
    raise ValueError("Unknown interpolation mode: {}".format(value))


class SourceDomain(namedtuple("SourceDomain", "x1 y1 z1 x2 y2 z2")):
    """Voxel-space box of the source in which samples can be interpolated fast."""

    __slots__ = ()

    @classmethod
    def fromShape(cls, shape, mode):
        m = interpolationMode(mode).margin
        lo = []
        hi = []
        for n in shape:
            if n == 1:
                # Singleton axis: only the plane itself is inside
                lo.append(0.0)
                hi.append(0.0)
            else:
                lo.append(m)
                hi.append(n - 1 - m)
        return cls(lo[0], lo[1], lo[2], hi[0], hi[1], hi[2])

    def contains(self, coords, tol=GRID_TOLERANCE):
        xp = sp.get_array_module(coords)
        inside = xp.ones(coords.shape[1:], dtype=bool)
        for ii, (lo, hi) in enumerate(((self.x1, self.x2), (self.y1, self.y2), (self.z1, self.z2))):
            inside &= (coords[ii] >= lo - tol) & (coords[ii] <= hi + tol)
        return inside


def snapToGrid(coords, shape, tol=GRID_TOLERANCE):
    """Pulls coordinates lying within tol outside the grid back onto its edge."""
    out = coords.copy()
    for ii, n in enumerate(shape[:3]):
        c = out[ii]
        c[(c < 0) & (c > -tol)] = 0.0
        c[(c > n - 1) & (c < n - 1 + tol)] = n - 1
    return out


def imwarp(arrIn, coords, mode=InterpolationMode.Linear, cval=0.0, device=-1):
    """
    Samples the volume arrIn (nx, ny, nz) or (nx, ny, nz, nt) at voxel coordinates coords (3, ...).
    Returns shape coords.shape[1:] (+ (nt,) for 4D input).
    """
    xp = sp.Device(device).xp
    mode = interpolationMode(mode)
    ndTools = conv.ndimage(device)
    if arrIn.ndim == 3:
        return ndTools.map_coordinates(
            arrIn,
            snapToGrid(coords, arrIn.shape),
            order=mode.order,
            mode="constant",
            cval=cval,
            prefilter=mode.order > 1,
        )
    frames = [
        imwarp(arrIn[..., t], coords, mode=mode, cval=cval, device=device)
        for t in range(arrIn.shape[3])
    ]
    return xp.stack(frames, axis=-1)


class Interpolator:
    """Resamples a Volume at world coordinates."""

    def __init__(self, volume, mode=InterpolationMode.Linear, cval=0.0):
        self.volume = volume
        self.mode = interpolationMode(mode)
        self.cval = cval
        self.domain = SourceDomain.fromShape(volume.shape, self.mode)

    def evaluate(self, points):
        """points: world coordinates (3, ...)."""
        coords = self.volume.worldToVoxel(points)
        return imwarp(self.volume.data, coords, self.mode, self.cval, self.volume.device)

    def inside(self, points):
        return self.domain.contains(self.volume.worldToVoxel(points))


def transformImage(image, reference, transformation, mode=InterpolationMode.Linear, padding=0.0):
    """
    Resamples image onto the grid of reference through transformation.
    Voxels mapped outside the image domain are set to padding.
    """
    xp = image.xp
    points = reference.worldGrid()
    disp = sp.to_device(transformation.displacement(sp.to_device(points, -1)), image.device)
    interpolator = Interpolator(image, mode, cval=padding)
    warped = points + disp
    out = interpolator.evaluate(warped)
    outside = ~interpolator.inside(warped)
    out[outside] = padding
    return reference.withData(xp.asarray(out))
