import numpy as np
import pytest

from demons import DemonsRegistration
from demonsUpdate import DemonsMode
from freeFormTransformation import LinearFreeFormTransformation, MultiLevelFreeFormTransformation
from imwarp import InterpolationMode
from registrationErrors import ConfigurationError
from registrationParameters import readParameters
from volume import Volume

SHIFT = np.array([0.4, -0.3, 0.25])


def _registration(target, source, parameters, transformation=None):
    registration = DemonsRegistration(progress=False)
    registration.setInput(target, source)
    registration.setOutput(
        transformation if transformation is not None else MultiLevelFreeFormTransformation()
    )
    registration.setParameter(parameters)
    return registration


def _interiorMean(data, margin=8):
    return data[:, margin:-margin, margin:-margin, margin:-margin].mean(axis=(1, 2, 3))


@pytest.mark.parametrize("mode", [DemonsMode.Additive, DemonsMode.Compositive])
def test_identity_gives_zero_field(mode, sinusoid, singleLevelParameters):
    target = sinusoid()
    source = sinusoid()
    parameters = singleLevelParameters(
        numberOfLevels=2, targetBlurring=1.0, sourceBlurring=1.0, numberOfIterations=5, demonsMode=mode
    )
    registration = _registration(target, source, parameters)
    transformation = registration.run()

    assert registration.globalField.shape == target.shape
    np.testing.assert_allclose(registration.globalField.data, 0.0, atol=1e-6)
    field = transformation.displacementField(target.shape, target.affine)
    np.testing.assert_allclose(field.data, 0.0, atol=1e-6)
    assert registration.levelIterations == {1: 5, 0: 5}


@pytest.mark.parametrize("mode", [DemonsMode.Additive, DemonsMode.Compositive])
def test_translation_recovery(mode, sinusoid, singleLevelParameters):
    target = sinusoid()
    source = sinusoid(shift=SHIFT)
    parameters = singleLevelParameters(numberOfIterations=200, demonsMode=mode)
    registration = _registration(target, source, parameters)
    transformation = registration.run()

    np.testing.assert_allclose(_interiorMean(registration.globalField.data), SHIFT, atol=0.1)
    field = transformation.displacementField(target.shape, target.affine)
    np.testing.assert_allclose(_interiorMean(field.data), SHIFT, atol=0.1)


def test_multi_level_run_reduces_misalignment(sinusoid, singleLevelParameters):
    target = sinusoid()
    source = sinusoid(shift=SHIFT)
    parameters = singleLevelParameters(numberOfLevels=2, numberOfIterations=50)
    registration = _registration(target, source, parameters)
    registration.run()

    error = np.linalg.norm(_interiorMean(registration.globalField.data) - SHIFT)
    assert error < 0.5 * np.linalg.norm(SHIFT)
    assert sorted(registration.levelIterations) == [0, 1]


def test_warped_source_is_closer_to_target(sinusoid, singleLevelParameters):
    target = sinusoid()
    source = sinusoid(shift=SHIFT)
    registration = _registration(
        target, source, singleLevelParameters(numberOfIterations=100)
    )
    registration.run()
    warped = registration.warpedSource()

    inner = (slice(4, -4),) * 3
    before = np.mean((target.data[inner] - source.data[inner]) ** 2)
    after = np.mean((target.data[inner] - warped.data[inner]) ** 2)
    assert after < 0.1 * before


def test_early_stopping_after_one_iteration(sinusoid, singleLevelParameters):
    target = sinusoid()
    source = sinusoid(shift=SHIFT)
    registration = _registration(
        target, source, singleLevelParameters(numberOfIterations=20, epsilon=1e6)
    )
    registration.run()

    assert registration.levelIterations == {0: 1}
    assert len(registration.loss) == 1


def test_background_is_excluded(sinusoid, singleLevelParameters):
    rng = np.random.default_rng(0)
    target = sinusoid(shape=(24, 24, 24))
    background = np.ones(target.shape, dtype=bool)
    background[6:18, 6:18, 6:18] = False
    targetData = target.data[..., 0].copy()
    sourceData = targetData.copy()
    targetData[background] = 0.0
    sourceData[background] = -rng.uniform(0, 500, size=int(background.sum()))

    parameters = singleLevelParameters(targetPadding=0.0, sourcePadding=0.0, smoothing=1.0)
    registration = _registration(
        Volume(targetData, target.affine), Volume(sourceData, target.affine), parameters
    )
    registration.run()

    assert np.all(registration.globalField.data == 0.0)


def test_prior_transformation_is_kept_underneath(sinusoid, singleLevelParameters):
    target = sinusoid()
    source = sinusoid(shift=SHIFT)
    prior = LinearFreeFormTransformation.fromVolume(target, 8.0)
    prior.data[:] = SHIFT[:, None, None, None]
    transformation = MultiLevelFreeFormTransformation([prior])

    registration = _registration(
        target, source, singleLevelParameters(numberOfIterations=30), transformation
    )
    registration.run()

    assert transformation.numberOfLevels == 2
    assert transformation.levels[0] is prior
    own = transformation.levels[1].displacement(target.worldGrid())
    np.testing.assert_allclose(_interiorMean(own), 0.0, atol=0.05)
    total = transformation.displacementField(target.shape, target.affine)
    np.testing.assert_allclose(_interiorMean(total.data), SHIFT, atol=0.1)


def test_run_level_in_isolation(sinusoid, singleLevelParameters):
    target = sinusoid()
    source = sinusoid(shift=SHIFT)
    registration = DemonsRegistration(progress=False)
    registration.setOutput(MultiLevelFreeFormTransformation())
    registration.setParameter(singleLevelParameters(numberOfIterations=3))
    registration.runLevel(target, source, 2)

    assert registration.levelIterations == {2: 3}
    assert registration.globalField.shape == target.shape
    assert registration.transformation.numberOfLevels == 1


def test_missing_input_or_output(sinusoid, singleLevelParameters):
    registration = DemonsRegistration(progress=False)
    registration.setParameter(singleLevelParameters())
    registration.setOutput(MultiLevelFreeFormTransformation())
    with pytest.raises(ConfigurationError):
        registration.run()

    registration = DemonsRegistration(progress=False)
    registration.setParameter(singleLevelParameters())
    registration.setInput(sinusoid(), sinusoid())
    with pytest.raises(ConfigurationError):
        registration.run()


@pytest.mark.parametrize(
    "overrides",
    [
        {"targetResolution": 0.0},
        {"sourceResolution": -1.0},
        {"numberOfLevels": 0},
        {"numberOfIterations": 0},
        {"numberOfLevels": 2, "reductionFactor": 1.0},
        {"stepSize": 0.0},
        {"smoothing": -1.0},
    ],
)
def test_invalid_parameters(overrides, sinusoid, singleLevelParameters):
    registration = _registration(sinusoid(), sinusoid(), singleLevelParameters(**overrides))
    with pytest.raises(ConfigurationError):
        registration.run()
    assert registration.transformation.numberOfLevels == 0


def test_empty_image_is_rejected(sinusoid, singleLevelParameters):
    empty = Volume(np.zeros((0, 4, 4)))
    registration = _registration(sinusoid(), empty, singleLevelParameters())
    with pytest.raises(ConfigurationError):
        registration.run()


def _frames(image, count):
    return image.withData(np.repeat(image.data, count, axis=3))


def test_frame_count_mismatch_is_rejected(sinusoid, singleLevelParameters):
    image = sinusoid(shape=(12, 12, 12))
    registration = _registration(
        _frames(image, 2), _frames(image, 3), singleLevelParameters(numberOfIterations=2)
    )
    with pytest.raises(ConfigurationError):
        registration.run()
    assert registration.transformation.numberOfLevels == 0


def test_single_frame_source_against_4d_target(sinusoid, singleLevelParameters):
    image = sinusoid(shape=(12, 12, 12))
    registration = _registration(
        _frames(image, 2), image, singleLevelParameters(numberOfIterations=2)
    )
    registration.run()
    np.testing.assert_allclose(registration.globalField.data, 0.0, atol=1e-6)


def test_modes_given_as_strings(sinusoid, singleLevelParameters, tmp_path):
    registration = _registration(
        sinusoid(shape=(12, 12, 12)),
        sinusoid(shape=(12, 12, 12)),
        singleLevelParameters(numberOfIterations=2),
    )
    registration.parameters.demonsMode = "Compositive"
    registration.parameters.interpolationMode = "bspline"
    registration.run()
    path = tmp_path / "demons.par"
    registration.write(path)
    p = readParameters(path)
    assert p.demonsMode is DemonsMode.Compositive
    assert p.interpolationMode is InterpolationMode.BSpline


def test_unknown_mode_string_is_a_configuration_error(sinusoid, singleLevelParameters):
    registration = _registration(sinusoid(), sinusoid(), singleLevelParameters())
    registration.parameters.demonsMode = "sideways"
    with pytest.raises(ConfigurationError):
        registration.run()


def test_guessed_parameters_survive_write_and_read(tmp_path):
    data = np.zeros((40, 36, 20))
    data[5:35, 5:30, 3:17] = 1.0
    affine = np.diag([0.9, 0.9, 2.5, 1.0])
    registration = DemonsRegistration(progress=False)
    registration.setInput(Volume(data, affine), Volume(data, affine))
    registration.guessParameter()

    path = tmp_path / "guessed.par"
    registration.write(path)
    assert "np." not in path.read_text()
    other = DemonsRegistration(progress=False)
    other.read(path)
    assert other.parameters == registration.parameters
    assert type(other.parameters.targetResolution) is float


def test_guess_parameter():
    data = np.zeros((64, 64, 64))
    data[8:56, 8:56, 8:56] = 1.0
    target = Volume(data, np.diag([1.0, 1.0, 1.0, 1.0]))
    source = Volume(data, np.diag([1.0, 1.0, 2.0, 1.0]))
    registration = DemonsRegistration(progress=False)
    with pytest.raises(ConfigurationError):
        registration.guessParameter()

    registration.setInput(target, source)
    registration.guessParameter()
    p = registration.parameters
    assert p.targetResolution == 1.0
    assert p.sourceResolution == 2.0
    assert p.targetPadding == 0.0
    assert p.targetBlurring == 0.5
    assert p.numberOfLevels == 3


def test_set_parameter_copies(singleLevelParameters):
    first = DemonsRegistration(progress=False)
    first.setParameter(singleLevelParameters(stepSize=0.5))
    second = DemonsRegistration(progress=False)
    second.setParameter(first)
    second.parameters.stepSize = 2.0
    assert first.parameters.stepSize == 0.5


def test_read_write_parameters(tmp_path, singleLevelParameters):
    path = tmp_path / "demons.par"
    first = DemonsRegistration(progress=False)
    first.setParameter(singleLevelParameters(demonsMode=DemonsMode.Compositive, epsilon=0.1 / 3))
    first.write(path)

    second = DemonsRegistration(progress=False)
    second.read(path)
    assert second.parameters == first.parameters
