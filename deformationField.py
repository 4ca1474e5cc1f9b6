import numpy as np
import sigpy as sp

import filters
from imwarp import imwarp, InterpolationMode
from volume import applyAffine


class DeformationField:
    """
    Dense displacement field (dx, dy, dz) in world units (mm).

    data has shape (3, nx, ny, nz) and lives on the grid given by affine,
    the same voxel to world convention as Volume.
    """

    def __init__(self, data, affine, device=-1):
        self.device = device
        self.data = sp.to_device(data, device)
        self.affine = np.array(affine, dtype=np.float64)

    @classmethod
    def zeros(cls, shape, affine, device=-1):
        xp = sp.Device(device).xp
        return cls(xp.zeros((3,) + tuple(shape)), affine, device=device)

    @classmethod
    def zerosLike(cls, volume):
        return cls.zeros(volume.shape, volume.affine, device=volume.device)

    @property
    def xp(self):
        return sp.Device(self.device).xp

    @property
    def shape(self):
        return tuple(self.data.shape[1:])

    @property
    def spacing(self):
        return np.sqrt(np.sum(self.affine[:3, :3] ** 2, axis=0))

    def copy(self):
        return DeformationField(self.data.copy(), self.affine.copy(), device=self.device)

    def worldGrid(self):
        xp = self.xp
        nx, ny, nz = self.shape
        coord = xp.mgrid[0:nx, 0:ny, 0:nz].astype("float64")
        return applyAffine(self.affine, coord, xp)

    def sample(self, points):
        """
        Trilinear lookup at world points (3, ...). Beyond the grid the nearest
        boundary value is used.
        """
        xp = self.xp
        coords = applyAffine(np.linalg.inv(self.affine), points, xp)
        for ii, n in enumerate(self.shape):
            coords[ii] = xp.clip(coords[ii], 0, n - 1)
        return xp.stack(
            [
                imwarp(self.data[ii], coords, InterpolationMode.Linear, device=self.device)
                for ii in range(3)
            ]
        )

    def add(self, increment):
        self._checkGeometry(increment)
        return DeformationField(self.data + increment.data, self.affine, device=self.device)

    def compose(self, increment):
        """
        base(x) + increment(x + base(x)). increment is looked up on its own grid.
        """
        displaced = self.worldGrid() + self.data
        return DeformationField(
            self.data + increment.sample(displaced), self.affine, device=self.device
        )

    def smooth(self, sigma):
        """Separable Gaussian smoothing of every component, sigma in mm. sigma = 0 returns a copy."""
        if sigma <= 0.0:
            return self.copy()
        sigmas = tuple(
            0.0 if n == 1 else sigma / s for n, s in zip(self.shape, self.spacing)
        )
        xp = self.xp
        data = xp.stack(
            [filters.gaussianSmooth(self.data[ii], sigmas, device=self.device) for ii in range(3)]
        )
        return DeformationField(data, self.affine, device=self.device)

    def resample(self, shape, affine):
        """Trilinear resampling onto another grid, used between pyramid levels."""
        if tuple(shape) == self.shape and np.allclose(affine, self.affine):
            return self.copy()
        target = DeformationField.zeros(shape, affine, device=self.device)
        target.data = self.sample(target.worldGrid())
        return target

    def magnitude(self):
        return self.xp.sqrt(self.xp.sum(self.data ** 2, axis=0))

    def scale(self, factor):
        return DeformationField(self.data * factor, self.affine, device=self.device)

    def _checkGeometry(self, other):
        if other.shape != self.shape or not np.allclose(other.affine, self.affine):
            raise ValueError(
                "Deformation fields live on different grids: {} vs {}".format(
                    self.shape, other.shape
                )
            )
