import numpy as np
import pytest

from volume import Volume


def _sinusoid(shape=(32, 32, 32), shift=(0.0, 0.0, 0.0), period=12.0, spacing=1.0):
    # Sum of one sinusoid per axis, so every voxel has a usable gradient direction
    axes = [np.arange(n, dtype=np.float64) * spacing for n in shape]
    x, y, z = np.meshgrid(*axes, indexing="ij")
    k = 2 * np.pi / period
    data = 100.0 + 20.0 * (
        np.sin(k * (x - shift[0])) + np.sin(k * (y - shift[1])) + np.sin(k * (z - shift[2]))
    )
    affine = np.diag([spacing, spacing, spacing, 1.0])
    return Volume(data, affine)


@pytest.fixture
def sinusoid():
    return _sinusoid


@pytest.fixture
def singleLevelParameters():
    def make(**kwargs):
        from registrationParameters import RegistrationParameters

        p = RegistrationParameters(
            targetResolution=1.0,
            sourceResolution=1.0,
            numberOfLevels=1,
            numberOfIterations=10,
            smoothing=2.0,
            epsilon=0.0,
        )
        for key, value in kwargs.items():
            setattr(p, key, value)
        return p

    return make
