"""
Site discovery.

A site is one WordPress installation: a directory containing the marker
configuration file (wp-config.php) somewhere below the sites root, usually
/home/<domain>/public_html/wp-config.php. Sites are discovered fresh on every
run; nothing is persisted.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import DiscoveryError, SiteInvalid

logger = logging.getLogger(__name__)

MARKER_FILENAME = 'wp-config.php'

_DEFINE_TEMPLATE = r"define\(\s*'{key}'\s*,\s*'([^']*)'\s*\)"


@dataclass(frozen=True)
class DatabaseCredentials:
    """Credential triple read from a marker configuration file."""

    database_name: str
    database_user: str
    database_password: str

    @property
    def complete(self) -> bool:
        return bool(self.database_name and self.database_user and self.database_password)

    def __repr__(self):
        return (
            f'<DatabaseCredentials name={self.database_name!r} '
            f'user={self.database_user!r} password=***>'
        )


@dataclass(frozen=True)
class Site:
    """One installed site, identified by its domain."""

    domain: str
    root_path: Path
    database_name: str
    database_user: str
    database_password: str

    @property
    def valid(self) -> bool:
        """A site can be backed up only when its database name is known."""
        return bool(self.database_name)

    @property
    def config_path(self) -> Path:
        return self.root_path / MARKER_FILENAME

    @property
    def credentials(self) -> DatabaseCredentials:
        return DatabaseCredentials(self.database_name, self.database_user, self.database_password)

    def __repr__(self):
        return f'<Site {self.domain} root={self.root_path} db={self.database_name or "UNKNOWN"}>'


def _extract_define(content: str, key: str) -> str:
    match = re.search(_DEFINE_TEMPLATE.format(key=re.escape(key)), content)
    return match.group(1) if match else ''


def parse_wp_config(config_path) -> DatabaseCredentials:
    """
    Extract DB_NAME, DB_USER and DB_PASSWORD from a wp-config.php file.

    Only single-quoted define('KEY', 'value'); statements are recognised.
    Missing or malformed entries yield an empty string.

    Args:
        config_path: Path to the marker configuration file

    Returns:
        DatabaseCredentials (fields may be empty)

    Raises:
        SiteInvalid: If the file cannot be read
    """
    try:
        content = Path(config_path).read_text(encoding='utf-8', errors='replace')
    except OSError as e:
        raise SiteInvalid(f"Cannot read {config_path}: {e}")

    return DatabaseCredentials(
        database_name=_extract_define(content, 'DB_NAME'),
        database_user=_extract_define(content, 'DB_USER'),
        database_password=_extract_define(content, 'DB_PASSWORD'),
    )


def find_marker_files(root, max_depth: int, marker: str = MARKER_FILENAME) -> Iterator[Path]:
    """
    Yield marker files found at most max_depth levels below root.

    Depth counts like find -maxdepth: root/a/b/marker is depth 3.
    Symlinked directories are not followed. Unreadable subdirectories are
    skipped; only the root itself has to be readable.

    Raises:
        DiscoveryError: If root does not exist or cannot be listed
    """
    root = Path(root)
    if not root.is_dir():
        raise DiscoveryError(f"Sites root does not exist or is not a directory: {root}")
    try:
        os.listdir(root)
    except OSError as e:
        raise DiscoveryError(f"Cannot read sites root {root}: {e}")

    root_depth = len(root.parts)

    def on_error(error):
        logger.debug(f"Skipping unreadable directory during discovery: {error}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        depth = len(Path(dirpath).parts) - root_depth
        if marker in filenames and depth + 1 <= max_depth:
            yield Path(dirpath) / marker
        if depth + 1 >= max_depth:
            # Files one level down would exceed max_depth
            dirnames[:] = []
        else:
            dirnames.sort()


def site_from_marker(marker_path: Path) -> Site:
    """Build a Site from the path of its marker configuration file."""
    root_path = marker_path.parent
    domain = root_path.parent.name
    try:
        credentials = parse_wp_config(marker_path)
    except SiteInvalid as e:
        logger.warning(f"{domain}: {e}")
        credentials = DatabaseCredentials('', '', '')

    return Site(
        domain=domain,
        root_path=root_path,
        database_name=credentials.database_name,
        database_user=credentials.database_user,
        database_password=credentials.database_password,
    )


def discover_sites(root, max_depth: int = 3, marker: str = MARKER_FILENAME) -> List[Site]:
    """
    Discover installed sites under root.

    Sites without a parseable database name are returned with valid=False so
    callers can report them as skipped; they are logged but never fatal.

    Artifacts are keyed by domain, so two markers whose roots share a parent
    directory cannot both be backed up. The first in root_path order is kept
    and the others are left out with a warning.

    Args:
        root: Sites root directory (e.g. /home)
        max_depth: Maximum depth at which the marker file is searched
        marker: Marker configuration filename

    Returns:
        Sites in lexicographic order of root_path

    Raises:
        DiscoveryError: If the root cannot be read
    """
    sites = [site_from_marker(path) for path in find_marker_files(root, max_depth, marker)]
    sites.sort(key=lambda s: str(s.root_path))

    by_domain = {}
    for site in sites:
        if site.domain in by_domain:
            logger.warning(
                f"{site.domain}: ignoring {site.config_path}, the domain is already "
                f"taken by {by_domain[site.domain].config_path}"
            )
            continue
        by_domain[site.domain] = site
    sites = list(by_domain.values())

    for site in sites:
        if not site.valid:
            logger.warning(f"{site.domain}: could not parse DB_NAME from {site.config_path}, site will be skipped")

    logger.info(f"Discovered {len(sites)} site(s) under {root}")
    return sites


def select_sites(sites: List[Site], domains: Optional[List[str]] = None) -> List[Site]:
    """
    Return the subset of sites whose domain is listed, preserving discovery order.

    Raises:
        ValueError: If a requested domain was not discovered
    """
    if not domains:
        return list(sites)

    known = {site.domain for site in sites}
    unknown = [d for d in domains if d not in known]
    if unknown:
        raise ValueError(f"Unknown site(s): {', '.join(unknown)}")

    wanted = set(domains)
    return [site for site in sites if site.domain in wanted]
