"""Exceptions raised by RBM layers and their training machinery."""


class ConfigurationError(ValueError):
    """Invalid hyperparameter combination or input that does not match the configured layer.

    These are detected at construction time (or at the batch boundary, before any sampling happens) and are never
    recovered from.
    """


class NumericDivergence(ArithmeticError):
    def __init__(self,
                 where: str,
                 message: str | None = None):
        """NaN or inf showed up during training.

        Parameters:
            where: 'samples' (Gibbs sampling produced NaN/inf pre-activations, e.g. overflow with large weights),
                   'gradients' (detected before the parameter update, so parameters are untouched) or 'parameters'
                   (detected after the update; roll back from a snapshot).
            message: Optional extra information.
        """
        if where not in ["samples", "gradients", "parameters"]:
            raise ValueError(f"Invalid where {where}. Allowed are 'samples', 'gradients', 'parameters'.")
        self.where = where
        if message is None:
            message = f"Non-finite values in {where}"
        super().__init__(message)


class MissingSnapshot(RuntimeError):
    """A restore was requested but no snapshot has been taken. Nothing was changed."""
