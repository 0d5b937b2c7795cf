"""Build assembler: wire modules in, compile the host, package the result."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from buildworker.archive import archive_format_for, make_archive
from buildworker.errors import AssemblyError, BuildworkerError, RequestError
from buildworker.inject import inject_module
from buildworker.models import Platform
from buildworker.version import ldflags, read_version_info
from buildworker.workspace import BuildEnvironment

# Versions that are not tags are assumed to be commit hashes and shortened.
SHORT_VERSION_LENGTH = 8


def artifact_name(host_version: str, platform: Platform, *, custom: bool, binary_name: str = "caddy") -> str:
    version = host_version
    if not version.startswith("v") and len(version) > SHORT_VERSION_LENGTH:
        version = version[:SHORT_VERSION_LENGTH]
    name = f"{binary_name}_{version}_{platform.os}_{platform.arch}"
    if platform.arch == "arm":
        name += platform.arm
    if custom:
        name += "_custom"
    return name


@dataclass(slots=True)
class BuildAssembler:
    env: BuildEnvironment

    def assemble(self, platform: Platform, output_dir: Path) -> Path:
        """Build the host for ``platform`` and return the packaged archive in ``output_dir``.

        The caller owns the archive and the environment's workspace.
        """
        if not platform.os or not platform.arch:
            raise RequestError("Missing required information: OS or arch.", context={"platform": str(platform)})
        env = self.env
        settings = env.settings

        for module in env.extension_modules:
            inject_module(env.entry_file, module)
            env.log.info(f"plugged {module} into {settings.entry_file}", operation="inject", module=module)

        name = artifact_name(
            env.host_version,
            platform,
            custom=env.has_extensions,
            binary_name=settings.binary_name,
        )
        binary_name = f"{name}.exe" if platform.os == "windows" else name
        output_dir.mkdir(parents=True, exist_ok=True)
        binary = output_dir / binary_name

        try:
            info = read_version_info(env.vcs, env.host_path)
            env.toolchain.build_binary(
                env.host_path / settings.main_package,
                gopath=env.gopath,
                platform=platform,
                output=binary,
                ldflags=ldflags(info, settings.version_package),
            )
        except BuildworkerError as exc:
            binary.unlink(missing_ok=True)
            raise AssemblyError(
                f"Building {settings.binary_name} failed.",
                hint=exc.hint,
                context={**exc.context, "platform": str(platform)},
            ) from exc

        try:
            files = {asset: env.host_path / settings.dist_dir / asset for asset in settings.dist_assets}
            missing = [str(path) for path in files.values() if not path.exists()]
            if missing:
                raise AssemblyError(
                    "Distribution assets are missing from the host checkout.",
                    context={"missing": ", ".join(missing), "version": env.host_version},
                )
            files[binary_name] = binary
            archive = make_archive(output_dir / name, files, archive_format_for(platform.os))
        finally:
            binary.unlink(missing_ok=True)
        env.log.info(f"packaged {archive.name}", operation="assemble", platform=str(platform))
        return archive
