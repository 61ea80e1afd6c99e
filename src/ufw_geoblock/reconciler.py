"""Converges live ufw rules to the static set plus the current country ranges"""

import ipaddress
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from .config import Config
from .errors import FetchError, MutationError, ValidationError
from .firewall import FirewallClient, Rule
from .sources import RangeSet, fetch_range_set, parse_ipv4_cidr

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    INIT = "init"
    UPDATE = "update"


@dataclass
class RunReport:
    mode: Mode
    deleted: int = 0
    delete_failed: int = 0
    static_added: int = 0
    static_failed: int = 0
    added: int = 0
    add_failed: int = 0
    skipped_local: int = 0
    skipped_invalid: int = 0
    invalid_local: int = 0
    skipped_duplicate: int = 0
    fetch_failed: bool = False
    fetch_error: str | None = None


def _allowed_sources(rules: Iterable[Rule]) -> set[str]:
    return {r.source for r in rules if r.permits and r.source is not None}


class RuleReconciler:
    def __init__(
        self,
        config: Config,
        client: FirewallClient,
        fetcher: Callable[[Config], RangeSet] | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.fetcher = fetcher or fetch_range_set
        self._local_networks = self._parse_local_networks(config.local_networks)

    @staticmethod
    def _parse_local_networks(values: Iterable[str]) -> dict[str, ipaddress.IPv4Network]:
        parsed: dict[str, ipaddress.IPv4Network] = {}
        for value in values:
            try:
                parsed[value] = parse_ipv4_cidr(value, require_prefix=True)
            except ValidationError:
                # ensure_static_rules reports these
                continue
        return parsed

    def purge_tagged_rules(self, live_rules: list[Rule], tag: str, report: RunReport | None = None) -> int:
        """Delete every rule whose comment equals tag, highest number first."""
        targets = sorted(
            (r for r in live_rules if r.comment == tag), key=lambda r: r.number, reverse=True
        )
        if not targets:
            logger.info(f"No old rules found with the tag '{tag}'")
            return 0

        deleted = 0
        for rule in targets:
            try:
                self.client.delete(rule.number)
            except MutationError as e:
                logger.warning(f"Failed to delete rule number {rule.number}: {e}")
                if report is not None:
                    report.delete_failed += 1
                continue
            logger.info(f"Deleted rule {rule.number}: {rule.source} ({tag})")
            deleted += 1

        logger.info(f"Deleted {deleted} old rules tagged '{tag}'")
        return deleted

    def _add_static(self, source: str, tag: str, report: RunReport | None) -> None:
        try:
            self.client.allow_from(source, tag)
        except MutationError as e:
            logger.warning(f"Failed to add allow rule for {source}: {e}")
            if report is not None:
                report.static_failed += 1
            return
        if report is not None:
            report.static_added += 1

    def ensure_static_rules(self, live_rules: list[Rule], report: RunReport | None = None) -> None:
        allowed = _allowed_sources(live_rules)

        for address in self.config.loopback_addresses:
            if address in allowed:
                logger.info(f"Loopback rule for {address} already exists")
                continue
            logger.info(f"Adding loopback rule for {address}")
            self._add_static(address, self.config.loopback_tag, report)

        if not self.config.local_networks:
            logger.info("No local networks configured")
        for net in self.config.local_networks:
            if net not in self._local_networks:
                logger.warning(f"Skipping invalid local network format: {net}")
                if report is not None:
                    report.invalid_local += 1
                continue
            if net in allowed:
                logger.info(f"Rule for local network {net} already exists")
                continue
            logger.info(f"Adding allow rule for local network: {net}")
            self._add_static(net, self.config.local_tag, report)

        ssh_ports = {f"{self.config.ssh_port}/tcp", str(self.config.ssh_port)}
        if self.config.ssh_port == 22:
            ssh_ports |= {"ssh", "OpenSSH"}
        if any(r.permits and r.port in ssh_ports for r in live_rules):
            logger.info(f"SSH allow rule (port {self.config.ssh_port}/tcp) already exists")
            return

        logger.info(f"Adding allow rule for SSH (port {self.config.ssh_port}/tcp)")
        try:
            self.client.allow_port(f"{self.config.ssh_port}/tcp", self.config.ssh_tag)
        except MutationError as e:
            logger.warning(f"Failed to add SSH allow rule: {e}")
            if report is not None:
                report.static_failed += 1
            return
        if report is not None:
            report.static_added += 1

    def fetch_range_set(self) -> RangeSet:
        range_set = self.fetcher(self.config)
        if len(range_set) == 0:
            raise FetchError(range_set.url, "empty response")
        logger.info(f"Fetched {len(range_set)} lines from {range_set.url}")
        return range_set

    def covering_local_network(self, cidr: str, network: ipaddress.IPv4Network) -> str | None:
        """Return the configured local network that makes cidr redundant, if any."""
        if cidr in self.config.local_networks:
            return cidr
        if self.config.local_overlap == "contains":
            for name, local in self._local_networks.items():
                if network.subnet_of(local):
                    return name
        return None

    def add_country_rules(
        self,
        range_set: RangeSet,
        tag: str,
        live_rules: list[Rule] | None = None,
        report: RunReport | None = None,
    ) -> int:
        """Add one allow rule per valid, non-local CIDR line of range_set."""
        report = report if report is not None else RunReport(mode=Mode.UPDATE)
        seen = {r.source for r in live_rules or () if r.comment == tag and r.source}
        added = 0

        for raw in range_set.lines:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue

            try:
                network = parse_ipv4_cidr(line)
            except ValidationError:
                logger.warning(f"Skipping invalid line in country list: {line}")
                report.skipped_invalid += 1
                continue

            local = self.covering_local_network(line, network)
            if local is not None:
                logger.info(f"Skipping {line} (already covered by local network rule: {local})")
                report.skipped_local += 1
                continue

            if line in seen:
                logger.debug(f"Skipping {line} (already allowed with '{tag}')")
                report.skipped_duplicate += 1
                continue

            try:
                created = self.client.allow_from(line, tag)
            except MutationError as e:
                logger.warning(f"Failed to add allow rule for {line}: {e}")
                report.add_failed += 1
                continue

            seen.add(line)
            if not created:
                logger.debug(f"Skipping {line} (rule already present)")
                report.skipped_duplicate += 1
                continue
            added += 1
            logger.info(f"Allowing from {line}")

        report.added += added
        logger.info(f"Added {added} new rules for {self.config.country_code.upper()}")
        return added

    def run(self, mode: Mode | str = Mode.UPDATE) -> RunReport:
        mode = Mode(mode)
        report = RunReport(mode=mode)
        tag = self.config.country_tag

        if mode is Mode.UPDATE:
            logger.info(f"[1/5] Deleting old rules tagged '{tag}'...")
            report.deleted = self.purge_tagged_rules(self.client.list_rules(), tag, report)
        else:
            logger.info("[1/5] Skipping rule deletion in INIT mode")

        live_rules = self.client.list_rules()

        logger.info("[2/5] Ensuring loopback, local network and SSH rules exist...")
        self.ensure_static_rules(live_rules, report)

        logger.info(f"[3/5] Downloading IP list for {self.config.country_code.upper()}...")
        try:
            range_set = self.fetch_range_set()
        except FetchError as e:
            logger.error(f"Failed to download IP list or the list is empty: {e}")
            logger.error("No new country-specific rules will be added. Check connection or URL.")
            report.fetch_failed = True
            report.fetch_error = str(e)
            logger.info("[4/5] Skipped adding country rules due to download failure")
            return report

        logger.info(f"[4/5] Adding new allow rules for {self.config.country_code.upper()} IPs...")
        self.add_country_rules(range_set, tag, live_rules=live_rules, report=report)
        return report
