class ConfigurationError(ValueError):
    """Registration inputs or parameters are missing or invalid."""


class ParseError(ValueError):
    """Malformed parameter file."""

    def __init__(self, message, lineNumber=None):
        if lineNumber is not None:
            message = "line {}: {}".format(lineNumber, message)
        super().__init__(message)
        self.lineNumber = lineNumber
