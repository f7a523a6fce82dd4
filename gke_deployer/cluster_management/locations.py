"""Selection of the zone or region for each cluster creation attempt.

Clusters are created in the first candidate location. When the creation fails with an error that
is known to be transient (e.g. the zone is out of resources), the next attempt uses the next
candidate location.
"""

import logging
import re
import typing as tp

from gke_deployer.cluster_management import common

LOGGER = logging.getLogger(__name__)


class LocationConfigError(common.ConfigError):
    pass


def verify_location_flags(regions: tp.Sequence[str], zones: tp.Sequence[str]) -> None:
    """Check that exactly one of zones and regions is configured."""
    if not zones and not regions:
        msg = "zone or region must be set for GKE deployment"
        raise LocationConfigError(msg)
    if zones and regions:
        msg = "zone and region cannot both be set"
        raise LocationConfigError(msg)
    bad_zones = [z for z in zones if z.rfind("-") < 1]
    if bad_zones:
        msg = f"Invalid zone names, a zone is '<region>-<suffix>': {bad_zones}"
        raise LocationConfigError(msg)


def candidate_locations(regions: tp.Sequence[str], zones: tp.Sequence[str]) -> list[str]:
    return list(zones or regions)


def location_flag(regions: tp.Sequence[str], zones: tp.Sequence[str], attempt: int) -> str:
    """Return the zone or region flag for `gcloud` commands.

    >>> location_flag([], ["us-central1-a", "us-east1-b"], 1)
    '--zone=us-east1-b'
    """
    if zones:
        return f"--zone={zones[attempt]}"
    return f"--region={regions[attempt]}"


def region_from_zone(zone: str) -> str:
    """Return region of the zone.

    >>> region_from_zone("us-central1-a")
    'us-central1'
    """
    sep_idx = zone.rfind("-")
    if sep_idx < 1:
        msg = f"Cannot get region of zone '{zone}'"
        raise LocationConfigError(msg)
    return zone[:sep_idx]


def region_from_location(regions: tp.Sequence[str], zones: tp.Sequence[str], attempt: int) -> str:
    """Return region for the location of given attempt.

    Used by commands that don't support zones, like the ones managing subnetworks.
    """
    if zones:
        return region_from_zone(zones[attempt])
    return regions[attempt]


class ErrorClassifier:
    """Decide if a failed cluster creation can be retried in another location."""

    def __init__(self, patterns: tp.Iterable[str]) -> None:
        self.patterns = tuple(patterns)
        try:
            self.compiled = [re.compile(p) for p in self.patterns]
        except re.error as exc:
            msg = f"Invalid retryable error pattern: {exc}"
            raise common.ConfigError(msg) from exc

    def is_retryable(self, error_text: str) -> bool:
        return any(r.search(error_text) for r in self.compiled)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({list(self.patterns)})"
