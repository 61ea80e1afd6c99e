"""Configuration defaults and the .env override loader"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values

from .errors import PreconditionError

logger = logging.getLogger(__name__)

DEFAULTS = {
    "COUNTRY_CODE": "",
    "IP_LIST_URL": "http://www.ipdeny.com/ipblocks/data/countries/{country}.zone",
    # private ranges that always stay reachable
    "LOCAL_NETWORKS": "192.168.0.0/16 10.0.0.0/8 172.16.0.0/12",
    "COUNTRY_RULE_COMMENT": "",
    "LOCAL_RULE_COMMENT": "AUTO-LOCAL-ALLOW",
    "LOOPBACK_RULE_COMMENT": "AUTO-LOOPBACK",
    "SSH_RULE_COMMENT": "AUTO-SSH-ALLOW",
    "SSH_PORT": "22",
    "RANGE_SOURCE": "ipdeny",
    "LOCAL_OVERLAP": "exact",
    "HTTP_TIMEOUT": "30",
    "LOG_FILE": "/var/log/ufw-geoblock.log",
    "UFW_BIN": "ufw",
}

RANGE_SOURCES = ("ipdeny", "dbip")
OVERLAP_MODES = ("exact", "contains")

LOOPBACK_ADDRESSES = ("127.0.0.1", "::1")

_COUNTRY_RE = re.compile(r"^[A-Za-z]{2}$")


@dataclass(frozen=True)
class Config:
    country_code: str
    ip_list_url: str = DEFAULTS["IP_LIST_URL"]
    local_networks: tuple[str, ...] = ()
    country_tag: str = ""
    local_tag: str = DEFAULTS["LOCAL_RULE_COMMENT"]
    loopback_tag: str = DEFAULTS["LOOPBACK_RULE_COMMENT"]
    ssh_tag: str = DEFAULTS["SSH_RULE_COMMENT"]
    ssh_port: int = 22
    range_source: str = "ipdeny"
    local_overlap: str = "exact"
    http_timeout: int = 30
    log_file: str = DEFAULTS["LOG_FILE"]
    ufw_bin: str = "ufw"
    loopback_addresses: tuple[str, ...] = field(default=LOOPBACK_ADDRESSES)

    def __post_init__(self) -> None:
        if not self.country_tag:
            object.__setattr__(
                self, "country_tag", f"AUTO-GEOBLOCK-{self.country_code.upper()}"
            )

    @property
    def range_list_url(self) -> str:
        return self.ip_list_url.format(country=self.country_code.lower())


def split_networks(value: str) -> tuple[str, ...]:
    """Split a space/comma separated network list, dropping duplicates."""
    seen: dict[str, None] = {}
    for token in re.split(r"[\s,]+", value.strip()):
        if token:
            seen.setdefault(token, None)
    return tuple(seen)


def _int_option(values: dict[str, str], key: str) -> int:
    try:
        return int(values[key])
    except ValueError:
        raise PreconditionError(f"{key} must be an integer, got {values[key]!r}") from None


def load_config(env_file: str | Path | None = ".env", **overrides: str) -> Config:
    """Resolve configuration once: override file > built-in defaults.

    Keyword overrides (e.g. LOG_FILE from the command line) win over both.
    """
    values = dict(DEFAULTS)

    if env_file is not None:
        env_path = Path(env_file)
        if env_path.is_file():
            # ${VAR} references resolve against earlier keys and the environment
            file_values = dotenv_values(env_path)
            values.update({k: v for k, v in file_values.items() if v is not None})
            logger.debug(f"Loaded overrides from {env_path}")
        else:
            logger.info(f"NOTICE: no override file at {env_path}, using built-in defaults")

    values.update({k: v for k, v in overrides.items() if v is not None})

    country = values["COUNTRY_CODE"].strip()
    if not country:
        raise PreconditionError(
            "No country code was defined (COUNTRY_CODE). "
            "Valid codes: https://www.ipdeny.com/ipblocks/"
        )
    if not _COUNTRY_RE.match(country):
        raise PreconditionError(f"Invalid country code: {country!r}")

    range_source = values["RANGE_SOURCE"].strip().lower()
    if range_source not in RANGE_SOURCES:
        raise PreconditionError(
            f"RANGE_SOURCE must be one of {', '.join(RANGE_SOURCES)}, got {range_source!r}"
        )

    local_overlap = values["LOCAL_OVERLAP"].strip().lower()
    if local_overlap not in OVERLAP_MODES:
        raise PreconditionError(
            f"LOCAL_OVERLAP must be one of {', '.join(OVERLAP_MODES)}, got {local_overlap!r}"
        )

    ssh_port = _int_option(values, "SSH_PORT")
    if not 0 < ssh_port < 65536:
        raise PreconditionError(f"SSH_PORT out of range: {ssh_port}")

    try:
        values["IP_LIST_URL"].format(country=country.lower())
    except (KeyError, IndexError, ValueError) as e:
        raise PreconditionError(
            f"IP_LIST_URL must only use the {{country}} placeholder, got {values['IP_LIST_URL']!r} ({e!r})"
        ) from None

    return Config(
        country_code=country,
        ip_list_url=values["IP_LIST_URL"],
        local_networks=split_networks(values["LOCAL_NETWORKS"]),
        country_tag=values["COUNTRY_RULE_COMMENT"],
        local_tag=values["LOCAL_RULE_COMMENT"],
        loopback_tag=values["LOOPBACK_RULE_COMMENT"],
        ssh_tag=values["SSH_RULE_COMMENT"],
        ssh_port=ssh_port,
        range_source=range_source,
        local_overlap=local_overlap,
        http_timeout=_int_option(values, "HTTP_TIMEOUT"),
        log_file=values["LOG_FILE"],
        ufw_bin=values["UFW_BIN"],
    )
