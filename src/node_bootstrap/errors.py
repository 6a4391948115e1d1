class BootstrapError(Exception):
    """Base class for every failure a bootstrap stage can report."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class DependencyMissing(BootstrapError):
    pass


class NetworkCreateError(BootstrapError):
    pass


class TeardownError(BootstrapError):
    pass


class StartError(BootstrapError):
    pass


class FirewallError(BootstrapError):
    pass


class InstallError(BootstrapError):
    pass


class ResourceExhausted(BootstrapError):
    pass


class UnsupportedArchitecture(BootstrapError):
    pass


class CommandFailed(InstallError):
    """An external command exited non-zero, was not found, or timed out."""

    def __init__(self, cmd: list[str], returncode: int | None, output: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.output = output.strip()

        status = "timed out" if returncode is None else f"exited with {returncode}"
        message = f"`{' '.join(cmd)}` {status}"
        if self.output:
            message += f": {self.output.splitlines()[-1]}"
        super().__init__(message)
