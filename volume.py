import numpy as np
import sigpy as sp
import nibabel as nib


def applyAffine(matrix, coords, xp=np):
    """Applies a 4x4 matrix to channel-first coordinates of shape (3, ...)."""
    A = xp.asarray(matrix[:3, :3])
    b = xp.asarray(matrix[:3, 3])
    out = xp.tensordot(A, coords, axes=1)
    return out + b.reshape((3,) + (1,) * (coords.ndim - 1))


class Volume:
    """
    Scalar image on a regular grid.
    data is always stored 4D (x, y, z, t), affine maps voxel indices to world (mm).
    2D and 3D inputs get singleton axes appended.
    """

    def __init__(self, data, affine=None, device=-1):
        self.device = device
        xp = sp.Device(device).xp
        data = sp.to_device(data, device)
        if data.ndim == 2:
            data = data[:, :, None, None]
        elif data.ndim == 3:
            data = data[..., None]
        elif data.ndim != 4:
            raise ValueError("Expected 2D, 3D or 4D data, got {}D.".format(data.ndim))
        self.data = data.astype(xp.float64)
        if affine is None:
            affine = np.eye(4)
        self.affine = np.array(affine, dtype=np.float64)

    @property
    def shape(self):
        return tuple(self.data.shape[:3])

    @property
    def numberOfFrames(self):
        return self.data.shape[3]

    @property
    def spacing(self):
        return np.sqrt(np.sum(self.affine[:3, :3] ** 2, axis=0))

    @property
    def xp(self):
        return sp.Device(self.device).xp

    def voxelToWorld(self, coords):
        return applyAffine(self.affine, coords, self.xp)

    def worldToVoxel(self, coords):
        return applyAffine(np.linalg.inv(self.affine), coords, self.xp)

    def worldGrid(self):
        """World coordinates of every voxel, shape (3, nx, ny, nz)."""
        xp = self.xp
        nx, ny, nz = self.shape
        coord = xp.mgrid[0:nx, 0:ny, 0:nz].astype("float64")
        return self.voxelToWorld(coord)

    def center(self):
        return applyAffine(self.affine, (np.array(self.shape, dtype=np.float64) - 1) / 2)

    def isEmpty(self):
        return min(self.data.shape) < 1

    def copy(self):
        return Volume(self.data.copy(), self.affine.copy(), device=self.device)

    def withData(self, data):
        """New volume on the same grid holding data."""
        return Volume(data, self.affine.copy(), device=self.device)

    def __repr__(self):
        return "Volume(shape={}, frames={}, spacing={})".format(
            self.shape, self.numberOfFrames, tuple(np.round(self.spacing, 4))
        )


def load(path, device=-1):
    img = nib.load(str(path))
    return Volume(np.asanyarray(img.dataobj, dtype=np.float64), img.affine, device=device)


def save(volume, path):
    data = sp.to_device(volume.data, -1)
    if data.shape[3] == 1:
        data = data[..., 0]
    nib.save(nib.Nifti1Image(data, volume.affine), str(path))
