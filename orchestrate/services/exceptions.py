# orchestrate/services/exceptions.py

class OrchestrateError(Exception):
    """
    Base class of every error this service reports.

    `leftovers` names provider resources that cleanup after the failure could
    not remove. They are appended to the message.
    """
    leftovers = ()

    @property
    def kind(self) -> str:
        return type(self).__name__

    def add_leftovers(self, names) -> "OrchestrateError":
        self.leftovers = list(self.leftovers) + [name for name in names if name not in self.leftovers]
        return self

    def __str__(self) -> str:
        message = super().__str__()
        if self.leftovers:
            message += f" Could not remove: {', '.join(self.leftovers)}."
        return message


# --- Request Exceptions ---

class ValidationError(OrchestrateError):
    """The request is malformed or contradictory; nothing was touched."""
    pass


class ConflictError(ValidationError):
    """A name is already taken, or the target still owns live resources."""
    pass


class UnknownStepError(ValidationError):
    """A provisioning step name is not in the step catalogue."""

    def __init__(self, step_names):
        self.step_names = list(step_names)
        super().__init__(f"Unknown provisioning step(s): {', '.join(self.step_names)}.")


class PatternError(ValidationError):
    """A naming pattern references tokens that cannot be resolved."""

    def __init__(self, tokens, message=None):
        self.tokens = list(tokens)
        super().__init__(message or f"Unresolvable naming token(s): {', '.join(self.tokens)}.")


class NotFoundError(OrchestrateError):
    """A referenced project, template, size, image or operation does not exist."""
    pass


class InvalidStateError(OrchestrateError):
    """The target exists but is not in a state that allows the request."""
    pass


# --- Execution Exceptions ---

class PartialCreateError(OrchestrateError):
    """
    Some, but not all, provider resources of a multi-resource create were made.

    The created ones have been rolled back by the time this is raised;
    `leftovers` lists any that could not be removed.
    """

    def __init__(self, message, failed_resource=None, rolled_back=(), leftovers=()):
        self.failed_resource = failed_resource
        self.rolled_back = list(rolled_back)
        self.leftovers = list(leftovers)
        super().__init__(message)


class PartialDeleteError(OrchestrateError):
    """Some provider resources of a multi-resource delete could not be removed."""

    def __init__(self, message, failures=None):
        # resource name -> reason
        self.failures = dict(failures or {})
        super().__init__(message)


class StepFailedError(OrchestrateError):
    """A provisioning step failed while building an image."""

    def __init__(self, step_name, reason):
        self.step_name = step_name
        self.reason = reason
        super().__init__(f"Provisioning step '{step_name}' failed: {reason}")


class ProviderError(OrchestrateError):
    """The compute provider rejected or failed a call."""
    pass


class OperationTimeoutError(ProviderError):
    """A provider long-running operation did not finish within its timeout."""
    pass
