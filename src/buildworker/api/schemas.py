"""Request and response bodies.

Field aliases keep the wire names build clients already send.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from buildworker.models import ModuleRef, Platform


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PluginSpec(_Body):
    package: str = Field(alias="Package", min_length=1)
    version: str = Field(alias="Version", min_length=1)

    def to_ref(self) -> ModuleRef:
        return ModuleRef(self.package, self.version)


class PlatformBody(_Body):
    os: str = Field(alias="GOOS")
    arch: str = Field(alias="GOARCH")
    arm: str = Field(default="", alias="GOARM")
    cgo: bool = Field(default=False, alias="CgoSupported")

    @classmethod
    def from_platform(cls, platform: Platform) -> PlatformBody:
        return cls(os=platform.os, arch=platform.arch, arm=platform.arm, cgo=platform.cgo)


class BuildRequest(_Body):
    os: str = Field(default="", alias="GOOS")
    arch: str = Field(default="", alias="GOARCH")
    arm: str = Field(default="", alias="GOARM")
    caddy_version: str = Field(default="", alias="CaddyVersion")
    plugins: list[PluginSpec] = Field(default_factory=list, alias="Plugins")

    def platform(self) -> Platform:
        return Platform(os=self.os, arch=self.arch, arm=self.arm)

    def modules(self) -> list[ModuleRef]:
        return [plugin.to_ref() for plugin in self.plugins]


class DeployRequest(_Body):
    caddy_version: str = Field(default="", alias="CaddyVersion")
    plugin_package: str = Field(default="", alias="PluginPackage")
    plugin_version: str = Field(default="", alias="PluginVersion")
    plugins: list[PluginSpec] = Field(default_factory=list, alias="Plugins")

    def roster(self) -> list[ModuleRef]:
        return [plugin.to_ref() for plugin in self.plugins]


class ErrorBody(BaseModel):
    message: str
    log: str
    code: str | None = None


class DeployResponse(BaseModel):
    target: str
    state: str
