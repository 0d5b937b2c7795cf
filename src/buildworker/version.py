"""Version metadata stamped into the host binary at link time."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from buildworker.vcs import GitAdapter

# Same layout as Go's time.UnixDate reference "Mon Jan 02 15:04:05 MST 2006".
BUILD_DATE_FORMAT = "%a %b %d %H:%M:%S UTC %Y"


@dataclass(frozen=True, slots=True)
class VersionInfo:
    build_date: str
    tag: str
    nearest_tag: str
    commit: str
    short_stat: str
    files_modified: tuple[str, ...]

    def variables(self) -> dict[str, str]:
        """Go variable name -> value, in link order."""
        return {
            "buildDate": self.build_date,
            "gitTag": self.tag,
            "gitNearestTag": self.nearest_tag,
            "gitCommit": self.commit,
            "gitShortStat": self.short_stat,
            "gitFilesModified": ",".join(self.files_modified),
        }


def read_version_info(vcs: GitAdapter, repo: Path, *, now: datetime | None = None) -> VersionInfo:
    moment = (now or datetime.now(UTC)).astimezone(UTC)
    return VersionInfo(
        build_date=moment.strftime(BUILD_DATE_FORMAT),
        tag=vcs.exact_tag(repo),
        nearest_tag=vcs.nearest_tag(repo),
        commit=vcs.short_commit(repo),
        short_stat=vcs.short_stat(repo),
        files_modified=vcs.modified_files(repo),
    )


def ldflags(info: VersionInfo, package: str) -> str:
    return " ".join(f'-X "{package}.{name}={value}"' for name, value in info.variables().items())
