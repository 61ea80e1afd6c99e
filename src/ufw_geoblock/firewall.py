"""Firewall boundary: typed rule records and the ufw command wrapper"""

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Protocol

from .errors import MutationError, PreconditionError

logger = logging.getLogger(__name__)

# [ 3] 22/tcp (v6)                ALLOW IN    Anywhere (v6)              # AUTO-SSH-ALLOW
_RULE_RE = re.compile(
    r"^\[\s*(?P<number>\d+)\]\s+"
    r"(?P<to>.+?)\s+"
    r"(?P<action>ALLOW|DENY|REJECT|LIMIT)(?:\s+(?P<direction>IN|OUT|FWD))?\s+"
    r"(?P<source>.+?)"
    r"(?:\s+\(out\))?"
    r"(?:\s+#\s?(?P<comment>.*?))?\s*$"
)

_SKIPPED_MARKERS = ("Skipping adding existing rule", "Skipping inserting existing rule")


@dataclass(frozen=True)
class Rule:
    number: int
    to: str
    action: str
    source: str | None
    comment: str | None = None
    direction: str | None = "IN"
    v6: bool = False

    @property
    def permits(self) -> bool:
        return self.action in ("ALLOW", "LIMIT") and self.direction in (None, "IN")

    @property
    def port(self) -> str:
        """Destination column without the '(v6)' marker or interface suffix."""
        return self.to.replace("(v6)", "").split(" on ")[0].strip()


def parse_numbered_status(output: str) -> list[Rule]:
    """Parse `ufw status numbered` into Rule records.

    Header lines and anything that does not look like a numbered rule are
    ignored. `source` is None for rules matching any source address.
    """
    rules: list[Rule] = []
    for line in output.splitlines():
        m = _RULE_RE.match(line.strip())
        if not m:
            continue

        source_col = m.group("source").strip()
        v6 = "(v6)" in m.group("to") or "(v6)" in source_col
        if source_col.startswith("Anywhere"):
            source = None
        else:
            source = source_col.split()[0]
            v6 = v6 or ":" in source

        comment = m.group("comment")
        rules.append(
            Rule(
                number=int(m.group("number")),
                to=m.group("to").strip(),
                action=m.group("action"),
                direction=m.group("direction"),
                source=source,
                comment=comment.strip() if comment else None,
                v6=v6,
            )
        )
    return rules


class FirewallClient(Protocol):
    def list_rules(self) -> list[Rule]: ...

    def allow_from(self, source: str, comment: str) -> bool: ...

    def allow_port(self, port_spec: str, comment: str) -> bool: ...

    def delete(self, number: int) -> None: ...

    def status(self) -> str: ...


class UfwClient:
    """Runs the ufw binary. Mutations raise MutationError on non-zero exit."""

    def __init__(self, ufw_bin: str = "ufw") -> None:
        self.ufw_bin = ufw_bin

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        cmd = [self.ufw_bin, *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as e:
            raise PreconditionError(f"Cannot execute {self.ufw_bin}: {e}") from e

    def _mutate(self, args: list[str]) -> str:
        result = self._run(args)
        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            raise MutationError([self.ufw_bin, *args], result.returncode, output)
        return output

    def list_rules(self) -> list[Rule]:
        result = self._run(["status", "numbered"])
        if result.returncode != 0:
            raise PreconditionError(
                f"{self.ufw_bin} status numbered failed (exit {result.returncode}): {result.stderr.strip()}"
            )
        return parse_numbered_status(result.stdout)

    def allow_from(self, source: str, comment: str) -> bool:
        output = self._mutate(["allow", "from", source, "to", "any", "comment", comment])
        return not any(marker in output for marker in _SKIPPED_MARKERS)

    def allow_port(self, port_spec: str, comment: str) -> bool:
        output = self._mutate(["allow", port_spec, "comment", comment])
        return not any(marker in output for marker in _SKIPPED_MARKERS)

    def delete(self, number: int) -> None:
        self._mutate(["--force", "delete", str(number)])

    def status(self) -> str:
        result = self._run(["status"])
        return result.stdout if result.returncode == 0 else result.stderr
