"""Error types raised by the reconciler and its boundaries"""


class GeoblockError(Exception):
    pass


class PreconditionError(GeoblockError):
    """Missing privilege, tool or configuration. Aborts before any mutation."""


class FetchError(GeoblockError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class ValidationError(GeoblockError):
    def __init__(self, value: str, reason: str) -> None:
        super().__init__(f"{value!r}: {reason}")
        self.value = value
        self.reason = reason


class MutationError(GeoblockError):
    def __init__(self, cmd: list[str], returncode: int, output: str = "") -> None:
        super().__init__(f"{' '.join(cmd)} failed (exit {returncode}): {output.strip()}")
        self.cmd = cmd
        self.returncode = returncode
        self.output = output
