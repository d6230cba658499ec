"""
Exceptions and warnings raised by pymetapool.
"""


class PyMetaPoolError(Exception):
    """Base exception for pymetapool."""

    pass


class MissingColumnError(PyMetaPoolError, ValueError):
    """Raised when a required column is absent from an input table."""

    def __init__(self, columns, context: str = "input table"):
        self.columns = sorted(str(c) for c in columns)
        self.context = context
        super().__init__(f"Missing required columns in the {context}: {self.columns}")


class DegenerateColumnError(PyMetaPoolError, ValueError):
    """Raised when a column is unusable as a covariate or outcome.

    The column filter catches this and excludes the column instead of failing.
    """

    def __init__(self, column: str, reason: str):
        self.column = column
        self.reason = reason
        super().__init__(f"Column '{column}' is not usable: {reason}")


class EmptyArmError(PyMetaPoolError, ValueError):
    """Raised when one or more trials have no subjects in a treatment arm."""

    def __init__(self, groups):
        self.groups = list(groups)
        super().__init__(
            f"Trials with an empty treatment or control arm: {self.groups}. "
            "A log odds ratio cannot be computed for these trials."
        )


class AdapterError(PyMetaPoolError, RuntimeError):
    """Raised when a meta-analysis engine fails to fit a model."""

    pass


class EmptyArmWarning(UserWarning):
    """Issued when aggregation finds trials with an empty arm."""

    pass


class ConvergenceWarning(UserWarning):
    """Issued when a sampler reports R-hat above threshold or divergences."""

    pass
