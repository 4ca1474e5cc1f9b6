import logging
from collections import namedtuple

import numpy as np

import filters
from imwarp import imwarp, interpolationMode, InterpolationMode
from volume import Volume

logger = logging.getLogger(__name__)

PyramidLevel = namedtuple("PyramidLevel", "target source resolution level")


def levelResolution(baseResolution, reductionFactor, level):
    """
    Voxel size at a pyramid level. Both r > 1 (voxel growth) and r < 1
    (image shrink) coarsen the levels, level 0 is the base resolution.
    """
    factor = reductionFactor if reductionFactor > 1 else 1.0 / reductionFactor
    return baseResolution * factor ** level


def blurImage(image, blurring, padding):
    """Gaussian blur with sigma in mm. Background (<= padding) is not blended into foreground."""
    if blurring <= 0.0:
        return image.copy()
    sigmas = tuple(0.0 if n == 1 else blurring / s for n, s in zip(image.shape, image.spacing))
    mask = image.data > padding
    return image.withData(
        filters.maskedGaussianSmooth(image.data, mask, sigmas, padding, device=image.device)
    )


def resampleImage(image, resolution, padding, mode=InterpolationMode.Linear):
    """
    Resamples image to isotropic voxels of size resolution (mm), keeping the image centre.
    Singleton axes keep their spacing. Interpolation is normalized by the foreground
    weight so background does not bleed into foreground, voxels with less than half
    foreground support become padding.
    """
    xp = image.xp
    spacing = image.spacing
    newSpacing = np.array(
        [s if n == 1 else resolution for n, s in zip(image.shape, spacing)], dtype=np.float64
    )
    if np.allclose(newSpacing, spacing):
        return image.copy()
    newShape = tuple(
        n if n == 1 else max(1, int(round(n * s / resolution))) for n, s in zip(image.shape, spacing)
    )

    A = image.affine[:3, :3] / spacing * newSpacing
    affine = np.eye(4)
    affine[:3, :3] = A
    affine[:3, 3] = image.center() - A @ ((np.array(newShape, dtype=np.float64) - 1) / 2)

    out = Volume(xp.zeros(newShape + (image.numberOfFrames,)), affine, device=image.device)
    coords = image.worldToVoxel(out.worldGrid())
    mask = image.data > padding
    mode = interpolationMode(mode)
    weights = imwarp(mask.astype(xp.float64), coords, mode, cval=0.0, device=image.device)
    values = imwarp(xp.where(mask, image.data, 0.0), coords, mode, cval=0.0, device=image.device)
    data = xp.full(values.shape, float(padding))
    valid = weights >= 0.5
    data[valid] = values[valid] / weights[valid]
    out.data = data
    return out


def buildLevels(
    image,
    blurring,
    baseResolution,
    reductionFactor,
    numberOfLevels,
    padding,
    mode=InterpolationMode.Linear,
):
    """
    Lazily yields (level, resolution, image) from the coarsest level down to level 0.
    Every level is derived from the base image only.
    """
    blurred = None
    for level in range(numberOfLevels - 1, -1, -1):
        if blurred is None:
            blurred = blurImage(image, blurring, padding)
        resolution = levelResolution(baseResolution, reductionFactor, level)
        yield level, resolution, resampleImage(blurred, resolution, padding, mode)


def pairedLevels(target, source, parameters):
    """Target and source pyramids walked together, coarsest first."""
    targetLevels = buildLevels(
        target,
        parameters.targetBlurring,
        parameters.targetResolution,
        parameters.reductionFactor,
        parameters.numberOfLevels,
        parameters.targetPadding,
        parameters.interpolationMode,
    )
    sourceLevels = buildLevels(
        source,
        parameters.sourceBlurring,
        parameters.sourceResolution,
        parameters.reductionFactor,
        parameters.numberOfLevels,
        parameters.sourcePadding,
        parameters.interpolationMode,
    )
    for (level, resolution, t), (_, _, s) in zip(targetLevels, sourceLevels):
        logger.debug(
            "Level {}: target {} source {} at {:.3f} mm".format(level, t.shape, s.shape, resolution)
        )
        yield PyramidLevel(t, s, resolution, level)
