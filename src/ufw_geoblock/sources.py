"""Country IP range download (ipdeny zone files or DB-IP MMDB)"""

import gzip
import http.client
import ipaddress
import logging
import re
import shutil
import tempfile
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import maxminddb

from .config import Config
from .errors import FetchError, ValidationError

logger = logging.getLogger(__name__)

USER_AGENT = "ufw-geoblock"

_IPV4_CIDR_RE = re.compile(r"^(?:\d{1,3}\.){3}\d{1,3}(?:/\d{1,2})?$")


@dataclass(frozen=True)
class RangeSet:
    url: str
    lines: tuple[str, ...]

    def __len__(self) -> int:
        return len(self.lines)


def parse_ipv4_cidr(value: str, require_prefix: bool = False) -> ipaddress.IPv4Network:
    """Validate dotted-quad `a.b.c.d[/n]` with octets <= 255 and prefix 0-32."""
    if not _IPV4_CIDR_RE.match(value) or (require_prefix and "/" not in value):
        raise ValidationError(value, "not an IPv4 address or CIDR")
    try:
        return ipaddress.IPv4Network(value, strict=False)
    except ValueError as e:
        raise ValidationError(value, str(e)) from None


def download(url: str, dest: Path, timeout: int) -> int:
    """Stream url into dest, returning the number of bytes written."""
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response, open(dest, "wb") as f_out:
            shutil.copyfileobj(response, f_out)
    except urllib.error.HTTPError:
        raise
    except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
        raise FetchError(url, str(getattr(e, "reason", e))) from e
    return dest.stat().st_size


def fetch_zone_file(url: str, timeout: int = 30) -> RangeSet:
    logger.info(f"Downloading IP list: {url}")
    with tempfile.TemporaryDirectory(prefix="ufw-geoblock-") as tmp:
        dest = Path(tmp) / "country.zone"
        try:
            size = download(url, dest, timeout)
        except urllib.error.HTTPError as e:
            raise FetchError(url, f"HTTP {e.code}") from e
        if size == 0:
            raise FetchError(url, "empty response")
        lines = dest.read_text(encoding="utf-8", errors="ignore").splitlines()

    logger.info(f"IP list downloaded: {len(lines)} lines")
    return RangeSet(url=url, lines=tuple(lines))


def dbip_month_url(when: datetime | None = None) -> str:
    now = when or datetime.now()
    url = (
        f"https://download.db-ip.com/free/"
        f"dbip-country-lite-{now.year}-{now.month:02d}.mmdb.gz"
    )
    return url


def _previous_month(now: datetime) -> datetime:
    if now.month == 1:
        return now.replace(year=now.year - 1, month=12, day=1)
    return now.replace(month=now.month - 1, day=1)


def parse_mmdb_country_ranges(mmdb_file: str | Path, country_code: str) -> list[str]:
    """Collect the IPv4 networks assigned to country_code in a DB-IP MMDB."""
    wanted = country_code.upper()
    ranges: list[str] = []
    total_networks = 0

    with maxminddb.open_database(str(mmdb_file)) as reader:
        for network, data in reader:
            total_networks += 1

            if network.version != 4 or not data:
                continue

            iso_code = data.get("country", {}).get("iso_code")
            if iso_code == wanted:
                ranges.append(str(network))

            if total_networks % 100000 == 0:
                logger.debug(f"Parsed {total_networks:,} networks ({len(ranges):,} for {wanted})")

    logger.info(f"MMDB parsed: {total_networks:,} networks, {len(ranges):,} IPv4 ranges for {wanted}")
    return ranges


def fetch_dbip(country_code: str, timeout: int = 30, when: datetime | None = None) -> RangeSet:
    now = when or datetime.now()
    url = dbip_month_url(now)

    with tempfile.TemporaryDirectory(prefix="ufw-geoblock-") as tmp:
        gz_file = Path(tmp) / "dbip-country-lite.mmdb.gz"
        mmdb_file = Path(tmp) / "dbip-country-lite.mmdb"

        logger.info(f"Downloading DB-IP database: {url}")
        try:
            size = download(url, gz_file, timeout)
        except urllib.error.HTTPError as e:
            if e.code != 404:
                raise FetchError(url, f"HTTP {e.code}") from e
            # early in the month the new file is not published yet
            logger.warning(f"Monthly file not published yet: {url}")
            url = dbip_month_url(_previous_month(now))
            logger.info(f"Falling back to previous month: {url}")
            try:
                size = download(url, gz_file, timeout)
            except urllib.error.HTTPError as e2:
                raise FetchError(url, f"HTTP {e2.code}") from e2

        if size == 0:
            raise FetchError(url, "empty response")

        try:
            with gzip.open(gz_file, "rb") as f_in, open(mmdb_file, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
            ranges = parse_mmdb_country_ranges(mmdb_file, country_code)
        except (OSError, ValueError, maxminddb.InvalidDatabaseError) as e:
            raise FetchError(url, f"unreadable database: {e}") from e

    if not ranges:
        raise FetchError(url, f"no IPv4 ranges for {country_code.upper()}")
    return RangeSet(url=url, lines=tuple(ranges))


def fetch_range_set(config: Config) -> RangeSet:
    if config.range_source == "dbip":
        return fetch_dbip(config.country_code, timeout=config.http_timeout)
    return fetch_zone_file(config.range_list_url, timeout=config.http_timeout)
