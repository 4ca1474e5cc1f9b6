from enum import Enum

import numpy as np
import sigpy as sp
from scipy import ndimage as npTools

from deformationField import DeformationField
from volume import applyAffine


class ControlPointStatus(Enum):
    Active = "Active"
    Passive = "Passive"


class LinearFreeFormTransformation:
    """
    Control point lattice whose displacements are interpolated trilinearly.

    data holds world displacements (mm) of shape (3, cx, cy, cz), affine maps
    lattice indices to world. Passive control points are left unchanged by fitField.
    """

    def __init__(self, shape, affine):
        self.affine = np.array(affine, dtype=np.float64)
        self.data = np.zeros((3,) + tuple(shape))
        self.active = np.ones(tuple(shape), dtype=bool)

    @classmethod
    def fromVolume(cls, volume, spacing):
        """Lattice spanning the bounding box of volume with control points about spacing mm apart."""
        voxelSpacing = volume.spacing
        shape = []
        ctrlSpacing = []
        for n, s in zip(volume.shape, voxelSpacing):
            extent = (n - 1) * s
            if n == 1 or extent <= 0.0:
                shape.append(1)
                ctrlSpacing.append(s)
            else:
                m = max(1, int(round(extent / spacing)))
                shape.append(m + 1)
                ctrlSpacing.append(extent / m)
        affine = np.eye(4)
        affine[:3, :3] = volume.affine[:3, :3] / voxelSpacing * np.array(ctrlSpacing)
        affine[:3, 3] = volume.affine[:3, 3]
        return cls(tuple(shape), affine)

    @property
    def shape(self):
        return tuple(self.data.shape[1:])

    @property
    def numberOfControlPoints(self):
        return int(np.prod(self.shape))

    @property
    def numberOfActiveControlPoints(self):
        return int(np.count_nonzero(self.active))

    def latticeToIndex(self, i, j, k):
        return int(np.ravel_multi_index((i, j, k), self.shape))

    def indexToLattice(self, index):
        return tuple(int(v) for v in np.unravel_index(index, self.shape))

    def putStatus(self, i, j, k, status):
        self.active[i, j, k] = status is ControlPointStatus.Active

    def getStatus(self, i, j, k):
        return ControlPointStatus.Active if self.active[i, j, k] else ControlPointStatus.Passive

    def controlPoints(self):
        """World positions of all control points, shape (3, cx, cy, cz)."""
        cx, cy, cz = self.shape
        coord = np.mgrid[0:cx, 0:cy, 0:cz].astype("float64")
        return applyAffine(self.affine, coord)

    def displacement(self, points):
        """Displacement at world points (3, ...). Outside the lattice the nearest control values apply."""
        coords = applyAffine(np.linalg.inv(self.affine), np.asarray(points, dtype=np.float64))
        for ii, n in enumerate(self.shape):
            coords[ii] = np.clip(coords[ii], 0, n - 1)
        return np.stack(
            [
                npTools.map_coordinates(self.data[ii], coords, order=1, mode="nearest")
                for ii in range(3)
            ]
        )

    def boundingBoxes(self, volume):
        """
        Voxel boxes of volume influenced by every control point, i.e. the cell range
        one control spacing around it. Returns lo, hi of shape (3, cx, cy, cz), inclusive.
        """
        M = np.linalg.inv(volume.affine) @ self.affine
        cx, cy, cz = self.shape
        center = applyAffine(M, np.mgrid[0:cx, 0:cy, 0:cz].astype("float64"))
        # Extent of the +-1 lattice cell corners along each voxel axis
        half = np.abs(M[:3, :3]).sum(axis=1)[:, None, None, None]
        limit = np.array(volume.shape)[:, None, None, None] - 1
        lo = np.clip(np.floor(center - half + 1e-6).astype(int), 0, limit)
        hi = np.clip(np.ceil(center + half - 1e-6).astype(int), 0, limit)
        return lo, hi

    def boundingBox(self, volume, index):
        """Voxel box (x1, y1, z1, x2, y2, z2) of volume influenced by control point index."""
        lo, hi = self.boundingBoxes(volume)
        i, j, k = self.indexToLattice(index)
        return tuple(int(v) for v in lo[:, i, j, k]) + tuple(int(v) for v in hi[:, i, j, k])

    def fitField(self, field):
        """Approximates a dense DeformationField on the lattice by sampling it at the active control points."""
        values = sp.to_device(field.sample(sp.to_device(self.controlPoints(), field.device)), -1)
        self.data[:, self.active] = values[:, self.active]


class MultiLevelFreeFormTransformation:
    """Stack of local lattices. The total displacement is the sum of all levels."""

    def __init__(self, levels=None):
        self.levels = list(levels) if levels is not None else []

    @property
    def numberOfLevels(self):
        return len(self.levels)

    def pushLocalTransformation(self, ffd):
        self.levels.append(ffd)

    def popLocalTransformation(self):
        return self.levels.pop()

    def displacement(self, points, exclude=None):
        points = np.asarray(points, dtype=np.float64)
        disp = np.zeros(points.shape)
        for ffd in self.levels:
            if ffd is exclude:
                continue
            disp += ffd.displacement(points)
        return disp

    def transform(self, points):
        points = np.asarray(points, dtype=np.float64)
        return points + self.displacement(points)

    def displacementField(self, shape, affine, exclude=None, device=-1):
        field = DeformationField.zeros(shape, affine)
        if self.levels:
            field.data = self.displacement(field.worldGrid(), exclude=exclude)
        return DeformationField(field.data, affine, device=device)

    def save(self, path):
        arrays = {"numberOfLevels": np.array(self.numberOfLevels)}
        for ii, ffd in enumerate(self.levels):
            arrays["level{}_data".format(ii)] = ffd.data
            arrays["level{}_affine".format(ii)] = ffd.affine
            arrays["level{}_active".format(ii)] = ffd.active
        np.savez(path, **arrays)

    @classmethod
    def load(cls, path):
        with np.load(path) as f:
            levels = []
            for ii in range(int(f["numberOfLevels"])):
                data = f["level{}_data".format(ii)]
                ffd = LinearFreeFormTransformation(data.shape[1:], f["level{}_affine".format(ii)])
                ffd.data = data.copy()
                ffd.active = f["level{}_active".format(ii)].copy()
                levels.append(ffd)
        return cls(levels)
