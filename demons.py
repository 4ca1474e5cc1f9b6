import contextlib
import logging

import numpy as np
from tqdm.auto import tqdm

import energy
import finiteDifferences as fd
from deformationField import DeformationField
from demonsUpdate import createStrategy, demonsMode
from demonsUtils import guessPadding, guessResolution, markPassiveControlPoints
from freeFormTransformation import LinearFreeFormTransformation
from imwarp import SourceDomain, interpolationMode, transformImage
from registrationErrors import ConfigurationError
from registrationParameters import RegistrationParameters, readParameters, writeParameters
from resample import levelResolution, pairedLevels

logger = logging.getLogger(__name__)


class LevelState:
    """Working images, gradients and fields of one pyramid level."""

    def __init__(self, level, target, source, parameters, device=-1):
        self.level = level
        self.target = target
        self.source = source
        self.targetPadding = parameters.targetPadding
        self.sourcePadding = parameters.sourcePadding
        self.interpolationMode = parameters.interpolationMode
        self.targetGradient = fd.gradient(target.data, target.affine, device=device)
        self.sourceGradient = fd.gradient(source.data, source.affine, device=device)
        self.targetGrid = target.worldGrid()
        self.domain = SourceDomain.fromShape(source.shape, parameters.interpolationMode)
        self.local = DeformationField.zerosLike(target)

    def release(self):
        self.target = self.source = None
        self.targetGradient = self.sourceGradient = None
        self.targetGrid = self.local = None


class DemonsRegistration:
    """
    Multi-resolution demons registration of a source image onto a target image.

    The result is written into a MultiLevelFreeFormTransformation: the engine
    pushes one linear lattice on top of any levels already present and refits it
    at the end of every pyramid level.

    Usage:
        registration = DemonsRegistration()
        registration.setInput(target, source)
        registration.setOutput(transformation)
        registration.guessParameter()
        registration.run()
    """

    def __init__(self, device=-1, progress=True):
        self.device = device
        self.progress = progress
        self.parameters = RegistrationParameters()
        self.target = None
        self.source = None
        self.transformation = None
        # Total displacement on the target grid of the last level run
        self.globalField = None
        self.levelIterations = {}
        self.loss = []
        self._ffd = None
        self._strategy = None
        self._runParameters = None

    def setInput(self, target, source):
        self.target = target
        self.source = source

    def setOutput(self, transformation):
        self.transformation = transformation

    def setParameter(self, other):
        """Copies the parameters of another registration (or a RegistrationParameters)."""
        parameters = other.parameters if isinstance(other, DemonsRegistration) else other
        self.parameters = parameters.copy()

    def read(self, path):
        self.parameters = readParameters(path, self.parameters)

    def write(self, path):
        writeParameters(self.parameters, path)

    def guessParameter(self):
        if self.target is None or self.source is None:
            raise ConfigurationError("Guessing parameters requires target and source images")
        p = self.parameters
        p.targetResolution = float(guessResolution(*_voxelSizes(self.target)))
        p.sourceResolution = float(guessResolution(*_voxelSizes(self.source)))
        p.targetPadding = float(guessPadding(self.target))
        p.sourcePadding = float(guessPadding(self.source))
        p.targetBlurring = p.targetResolution / 2.0
        p.sourceBlurring = p.sourceResolution / 2.0
        p.reductionFactor = 2.0
        p.smoothing = p.targetResolution
        p.stepSize = 1.0
        p.numberOfIterations = 20
        p.epsilon = 0.001

        # Keep at least 16 voxels along the smallest axis at the coarsest level
        extents = [
            n * s / p.targetResolution
            for n, s in zip(self.target.shape, self.target.spacing)
            if n > 1
        ]
        smallest = min(extents) if extents else 1
        p.numberOfLevels = 1
        while p.numberOfLevels < 3 and smallest / 2 ** p.numberOfLevels >= 16:
            p.numberOfLevels += 1
        logger.info("Guessed parameters: {}".format(p))

    def run(self):
        """Registers source to target over the whole pyramid, coarsest level first."""
        self._checkInputs(self.target, self.source)
        parameters = self._startRun()

        logger.info("Target Image Shape: {} ...".format(self.target.shape))
        logger.info("Source Image Shape: {} ...".format(self.source.shape))
        logger.info("Number of Levels: {} ...".format(parameters.numberOfLevels))
        resolutions = [
            levelResolution(parameters.targetResolution, parameters.reductionFactor, ii)
            for ii in range(parameters.numberOfLevels)
        ]
        logger.info("Resolution per Level: {} ...".format([round(r, 4) for r in resolutions]))
        logger.info("Iterations per Level: {} ...".format(parameters.numberOfIterations))
        logger.info("Demons Mode: {} ...".format(parameters.demonsMode.value))

        try:
            for pyramidLevel in pairedLevels(self.target, self.source, parameters):
                self._runLevel(pyramidLevel.target, pyramidLevel.source, pyramidLevel.level)
        except KeyboardInterrupt:
            logger.warning("Registration interrupted")
            raise
        return self.transformation

    def runLevel(self, target, source, level=0):
        """
        Runs one level on already blurred and resampled volumes, starting from
        the current output transformation.
        """
        self._checkInputs(target, source)
        self._startRun()
        self._runLevel(target, source, level)
        return self.transformation

    def warpedSource(self):
        """Source resampled on the full resolution target grid through the output transformation."""
        self._checkInputs(self.target, self.source)
        return transformImage(
            self.source,
            self.target,
            self.transformation,
            self.parameters.interpolationMode,
            padding=self.parameters.sourcePadding,
        )

    def _checkInputs(self, target, source):
        if target is None or source is None:
            raise ConfigurationError("Registration filter has no input (target and source required)")
        if self.transformation is None:
            raise ConfigurationError("Registration filter has no output transformation")
        for name, image in (("Target", target), ("Source", source)):
            if image.isEmpty():
                raise ConfigurationError("{} image has zero extent: {}".format(name, image.data.shape))
        if source.numberOfFrames not in (1, target.numberOfFrames):
            raise ConfigurationError(
                "Source has {} frames, expected 1 or {} like the target".format(
                    source.numberOfFrames, target.numberOfFrames
                )
            )

    def _startRun(self):
        parameters = self.parameters.copy()
        _checkParameters(parameters)
        self._runParameters = parameters
        self._strategy = createStrategy(parameters.demonsMode, parameters.symmetricForces)
        self.globalField = None
        self._ffd = None
        self.levelIterations = {}
        return parameters

    @contextlib.contextmanager
    def _initialize(self, level, target, source):
        parameters = self._runParameters
        state = LevelState(level, target, source, parameters, device=self.device)
        if self.globalField is None:
            self.globalField = self.transformation.displacementField(
                target.shape, target.affine, device=self.device
            )
        else:
            self.globalField = self.globalField.resample(target.shape, target.affine)
        try:
            yield state
        finally:
            state.release()

    def _runLevel(self, target, source, level):
        with self._initialize(level, target, source) as state:
            self._iterate(state)
            self._finalize(state)

    def _iterate(self, state):
        parameters = self._runParameters
        strategy = self._strategy
        self.loss = []
        iterations = 0
        metric = ssd = 0.0
        desc = "Level {}".format(state.level)
        with tqdm(
            desc=desc, total=parameters.numberOfIterations, disable=not self.progress, leave=True
        ) as pbar:
            for jj in range(parameters.numberOfIterations):
                result = strategy.force(state, self.globalField)
                state.local.data[...] = 0.0
                strategy.add(state.local, result.force, parameters.stepSize)
                local = strategy.smooth(state.local, parameters.smoothing)
                self.globalField = strategy.update(self.globalField, local)

                iterations += 1
                metric, ssd = result.metric, result.ssd
                self.loss.append(metric)
                pbar.set_postfix(force=metric, ssd=ssd)
                pbar.update()
                # Stopping criteria
                if metric < parameters.epsilon:
                    break
        self.levelIterations[state.level] = iterations
        logger.info(
            "Level {}: {} iterations, mean force {:.6g}, ssd {:.6g}".format(
                state.level, iterations, metric, ssd
            )
        )

    def _finalize(self, state):
        parameters = self._runParameters
        if self._ffd is None:
            reference = self.target if self.target is not None else state.target
            spacing = parameters.targetResolution
            self._ffd = LinearFreeFormTransformation.fromVolume(reference, spacing)
            markPassiveControlPoints(reference, parameters.targetPadding, self._ffd)
            self.transformation.pushLocalTransformation(self._ffd)
        other = self.transformation.displacementField(
            state.target.shape, state.target.affine, exclude=self._ffd, device=self.device
        )
        self._ffd.fitField(self.globalField.add(other.scale(-1.0)))
        if logger.isEnabledFor(logging.DEBUG):
            det = energy.jacobianDet(self.globalField, device=self.device)
            logger.debug(
                "Level {}: Jacobian determinant in [{:.4f}, {:.4f}]".format(
                    state.level, float(det.min()), float(det.max())
                )
            )


def _voxelSizes(volume):
    sizes = [s for n, s in zip(volume.shape, volume.spacing) if n > 1]
    return sizes if sizes else list(volume.spacing)


def _checkParameters(p):
    try:
        p.demonsMode = demonsMode(p.demonsMode)
        p.interpolationMode = interpolationMode(p.interpolationMode)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    if p.numberOfLevels < 1:
        raise ConfigurationError("Number of levels must be positive, got {}".format(p.numberOfLevels))
    if p.numberOfIterations < 1:
        raise ConfigurationError(
            "Number of iterations must be positive, got {}".format(p.numberOfIterations)
        )
    if p.targetResolution <= 0 or p.sourceResolution <= 0:
        raise ConfigurationError(
            "Resolution must be positive, got target {} and source {} (see guessParameter)".format(
                p.targetResolution, p.sourceResolution
            )
        )
    if p.reductionFactor <= 0 or (p.reductionFactor == 1 and p.numberOfLevels > 1):
        raise ConfigurationError("Invalid reduction factor {}".format(p.reductionFactor))
    if p.stepSize <= 0:
        raise ConfigurationError("Step size must be positive, got {}".format(p.stepSize))
    if p.smoothing < 0 or p.targetBlurring < 0 or p.sourceBlurring < 0:
        raise ConfigurationError("Smoothing and blurring must not be negative")
    if not np.isfinite(p.epsilon):
        raise ConfigurationError("Epsilon must be finite")
