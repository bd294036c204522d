"""Error taxonomy shared by modules, the driver, the store and admission."""


class NodetuneError(Exception):
    """Base class for every error nodetune raises on purpose."""


class PreconditionError(NodetuneError):
    """Required execution context or input is missing."""


class StateReadError(NodetuneError):
    """Current host state could not be read (not the same as "not found")."""


class StateWriteError(NodetuneError):
    """Shared state could not be written."""


class HostPathError(NodetuneError):
    """A host path is not the kind of file nodetune manages there."""


class CommandError(NodetuneError):
    """A host command exited non-zero or ran past its deadline."""

    def __init__(self, cmd, returncode, output=""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = output or ""
        pretty = " ".join(str(c) for c in self.cmd)
        if returncode is None:
            msg = f"'{pretty}' timed out"
        else:
            msg = f"'{pretty}' exited {returncode}"
        detail = self.output.strip()
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class ActivationError(NodetuneError):
    """An artifact was written but the host did not converge on it."""


class ModuleError(NodetuneError):
    """Failure attributed to one module; str() is ``<module>: <cause>``."""

    def __init__(self, module: str, cause: Exception):
        self.module = module
        self.cause = cause
        super().__init__(f"{module}: {cause}")


class ConflictError(NodetuneError):
    """Admission rejected a HostConfig that collides with an existing one."""


class ObjectNotFoundError(NodetuneError):
    pass


class ResourceVersionConflict(NodetuneError):
    """Optimistic-concurrency write lost against a concurrent writer."""
