import pytest

from ufw_geoblock.config import Config
from ufw_geoblock.errors import MutationError
from ufw_geoblock.firewall import Rule
from ufw_geoblock.sources import RangeSet


class FakeFirewall:
    """In-memory ufw: rules are renumbered 1..n after every change."""

    def __init__(self, rules=None):
        # (to, action, source, comment)
        self.entries = list(rules or [])
        self.fail_add = set()
        self.fail_delete = set()
        self.deleted_numbers = []
        self.calls = []

    def list_rules(self):
        self.calls.append(("list",))
        return [
            Rule(number=i, to=to, action=action, source=source, comment=comment, v6=bool(source and ":" in source))
            for i, (to, action, source, comment) in enumerate(self.entries, start=1)
        ]

    def _add(self, to, source, comment):
        if source in self.fail_add or to in self.fail_add:
            raise MutationError(["ufw", "allow", source or to], 1, "ERROR: simulated")
        entry = (to, "ALLOW", source, comment)
        if any(e[0] == to and e[2] == source for e in self.entries):
            return False
        self.entries.append(entry)
        return True

    def allow_from(self, source, comment):
        self.calls.append(("allow_from", source, comment))
        return self._add("Anywhere", source, comment)

    def allow_port(self, port_spec, comment):
        self.calls.append(("allow_port", port_spec, comment))
        return self._add(port_spec, None, comment)

    def delete(self, number):
        self.calls.append(("delete", number))
        if number in self.fail_delete:
            raise MutationError(["ufw", "--force", "delete", str(number)], 1, "ERROR: simulated")
        if not 1 <= number <= len(self.entries):
            raise MutationError(["ufw", "--force", "delete", str(number)], 1, "ERROR: no such rule")
        self.deleted_numbers.append(number)
        del self.entries[number - 1]

    def status(self):
        return "Status: active"

    def sources_with(self, comment):
        return [e[2] for e in self.entries if e[3] == comment]


@pytest.fixture
def config():
    return Config(country_code="se", local_networks=("10.0.0.0/8",))


@pytest.fixture
def firewall():
    return FakeFirewall()


@pytest.fixture
def static_rules():
    return [
        ("Anywhere", "ALLOW", "127.0.0.1", "AUTO-LOOPBACK"),
        ("Anywhere (v6)", "ALLOW", "::1", "AUTO-LOOPBACK"),
        ("Anywhere", "ALLOW", "10.0.0.0/8", "AUTO-LOCAL-ALLOW"),
        ("22/tcp", "ALLOW", None, "AUTO-SSH-ALLOW"),
    ]


def make_range_set(*lines):
    return RangeSet(url="http://example.invalid/se.zone", lines=tuple(lines))


@pytest.fixture
def range_set_factory():
    return make_range_set
