"""Version contract parsed from a Talos version string."""
import re
from functools import total_ordering
from typing import NamedTuple, Optional

from ..errors import VersionContractError

_VERSION_RE = re.compile(r'^v?(?P<major>\d+)\.(?P<minor>\d+)(?:\.(?P<patch>\d+))?(?:[-+].*)?$')


@total_ordering
class VersionContract(NamedTuple):
    """A ``(major, minor)`` selector for schema variants and defaults."""
    major: int
    minor: int

    def __str__(self) -> str:
        return f"v{self.major}.{self.minor}"

    def __lt__(self, other) -> bool:
        return tuple(self) < tuple(other)

    def at_least(self, major: int, minor: int) -> bool:
        return tuple(self) >= (major, minor)

    # Feature gates used by the generators

    @property
    def secretbox_encryption(self) -> bool:
        return self.at_least(0, 14)

    @property
    def kubeprism_enabled(self) -> bool:
        return self.at_least(1, 6)

    @property
    def host_dns_enabled(self) -> bool:
        return self.at_least(1, 7)

    @property
    def disk_selector_by_transport(self) -> bool:
        return self.at_least(1, 8)


CURRENT_CONTRACT = VersionContract(1, 10)


def parse_contract(version: Optional[str]) -> VersionContract:
    """Parse ``v1.10.5``, ``1.10`` or ``v1.9.0-beta.1`` into a contract.

    An empty version selects the current contract.

    Raises:
        VersionContractError: on invalid syntax
    """
    if version is None or not version.strip():
        return CURRENT_CONTRACT
    match = _VERSION_RE.match(version.strip())
    if not match:
        raise VersionContractError(
            f"invalid Talos version {version!r}",
            details="expected a version like v1.10 or v1.10.5",
        )
    return VersionContract(int(match.group('major')), int(match.group('minor')))
