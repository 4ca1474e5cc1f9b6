"""
Registration parameters and their text format.

Each non-empty line not starting with '#' reads "Key = Value". Keys are
written in a fixed order, floats with repr so that a write/read cycle
reproduces every value.
"""
import copy
from dataclasses import dataclass

from demonsUpdate import DemonsMode, demonsMode
from imwarp import InterpolationMode, interpolationMode
from registrationErrors import ParseError

# Smallest value of a signed 16 bit grey image, used when no padding is present
MIN_GREY = -32768


@dataclass
class RegistrationParameters:
    targetBlurring: float = 0.0
    targetResolution: float = 0.0
    targetPadding: float = MIN_GREY
    sourceBlurring: float = 0.0
    sourceResolution: float = 0.0
    sourcePadding: float = MIN_GREY
    numberOfLevels: int = 1
    numberOfIterations: int = 10
    stepSize: float = 1.0
    epsilon: float = 0.001
    reductionFactor: float = 2.0
    smoothing: float = 0.0
    interpolationMode: InterpolationMode = InterpolationMode.Linear
    demonsMode: DemonsMode = DemonsMode.Additive
    symmetricForces: bool = False

    def copy(self):
        return copy.deepcopy(self)


def _parseBool(value):
    lowered = value.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError("not a boolean: {}".format(value))


def _formatFloat(value):
    # numpy scalars repr as np.float64(...), write plain Python floats
    return repr(float(value))


def _formatInt(value):
    return str(int(value))


# Key, attribute, parser, formatter. Order is the write order.
_KEYS = (
    ("Target blurring (in mm)", "targetBlurring", float, _formatFloat),
    ("Target resolution (in mm)", "targetResolution", float, _formatFloat),
    ("Target padding value", "targetPadding", float, _formatFloat),
    ("Source blurring (in mm)", "sourceBlurring", float, _formatFloat),
    ("Source resolution (in mm)", "sourceResolution", float, _formatFloat),
    ("Source padding value", "sourcePadding", float, _formatFloat),
    ("No. of resolution levels", "numberOfLevels", int, _formatInt),
    ("No. of iterations", "numberOfIterations", int, _formatInt),
    ("Step size", "stepSize", float, _formatFloat),
    ("Epsilon", "epsilon", float, _formatFloat),
    ("Reduction factor", "reductionFactor", float, _formatFloat),
    ("Smoothing (in mm)", "smoothing", float, _formatFloat),
    (
        "Interpolation mode",
        "interpolationMode",
        interpolationMode,
        lambda v: interpolationMode(v).value,
    ),
    ("Demons mode", "demonsMode", demonsMode, lambda v: demonsMode(v).value),
    ("Symmetric forces", "symmetricForces", _parseBool, lambda v: str(bool(v))),
)
_BY_KEY = {key: (attr, parse) for key, attr, parse, _ in _KEYS}


def readLine(line, lineNumber=None):
    """
    Splits one line into (key, value). Returns None for blank and comment lines.
    """
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    if "=" not in stripped:
        raise ParseError("No valid line format: {!r}".format(stripped), lineNumber)
    key, value = stripped.split("=", 1)
    return key.strip(), value.strip()


def serialize(parameters, stream):
    stream.write("#\n# Registration parameters\n#\n\n")
    for key, attr, _, fmt in _KEYS:
        stream.write("{:<34s}= {}\n".format(key, fmt(getattr(parameters, attr))))


def deserialize(stream, parameters=None):
    """
    Reads parameters from a text stream. Keys missing from the stream keep the
    values of parameters (defaults if None). Unknown keys are an error.
    """
    parameters = RegistrationParameters() if parameters is None else parameters.copy()
    for lineNumber, line in enumerate(stream, start=1):
        entry = readLine(line, lineNumber)
        if entry is None:
            continue
        key, value = entry
        if key not in _BY_KEY:
            raise ParseError("Unknown parameter: {!r}".format(key), lineNumber)
        attr, parse = _BY_KEY[key]
        try:
            setattr(parameters, attr, parse(value))
        except ValueError as e:
            raise ParseError("Bad value for {!r}: {}".format(key, e), lineNumber) from e
    return parameters


def readParameters(path, parameters=None):
    with open(path, "r") as f:
        return deserialize(f, parameters)


def writeParameters(parameters, path):
    with open(path, "w") as f:
        serialize(parameters, f)
