"""Platform catalog: the toolchain's OS/arch matrix, expanded and filtered."""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

from buildworker.errors import CommandError, RequestError
from buildworker.models import Platform, PlatformFilter
from buildworker.settings import UNSUPPORTED_PLATFORMS
from buildworker.toolchain import Toolchain

# The toolchain reports a bare "arm"; we build each of these revisions.
ARM_REVISIONS = ("5", "6", "7")


def parse_dist_list(raw: str) -> list[Platform]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CommandError(
            "Toolchain platform list is not valid JSON.",
            hint=str(exc),
            context={"operation": "dist_list"},
        ) from exc
    if not isinstance(payload, list):
        raise CommandError(
            "Toolchain platform list has invalid structure.",
            context={"operation": "dist_list"},
        )
    return [Platform.from_dict(item) for item in payload if isinstance(item, dict)]


def expand_arm(platforms: Iterable[Platform]) -> list[Platform]:
    expanded: list[Platform] = []
    for platform in platforms:
        if platform.arch == "arm" and not platform.arm:
            expanded.extend(replace(platform, arm=revision) for revision in ARM_REVISIONS)
        else:
            expanded.append(platform)
    return expanded


def filter_platforms(platforms: Iterable[Platform], exclusions: Sequence[PlatformFilter]) -> list[Platform]:
    return [p for p in platforms if not any(rule.matches(p) for rule in exclusions)]


@dataclass(slots=True)
class PlatformCatalog:
    toolchain: Toolchain

    def list(self, exclusions: Sequence[PlatformFilter] = UNSUPPORTED_PLATFORMS) -> list[Platform]:
        return filter_platforms(expand_arm(parse_dist_list(self.toolchain.dist_list())), exclusions)

    def require(self, platform: Platform, exclusions: Sequence[PlatformFilter] = UNSUPPORTED_PLATFORMS) -> Platform:
        """Return the catalog entry matching a requested platform or reject it."""
        for candidate in self.list(exclusions):
            if (candidate.os, candidate.arch, candidate.arm) == (platform.os, platform.arch, platform.arm):
                return candidate
        raise RequestError(
            "Platform is not supported.",
            hint="GET /supported-platforms lists the buildable targets.",
            context={"platform": str(platform)},
        )
