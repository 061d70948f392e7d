import os
from typing import Literal, Type

from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict, YamlConfigSettingsSource

from package_resolution import PackageEntry, RefType, StaticRegistry, VCS

CONFIG_ENV_VAR = 'VANITY_PROXY_CONFIG'
DEFAULT_CONFIG_FILE = 'config.yaml'


class PackageSettings(BaseModel):
    path: str = ''
    vcs: VCS = VCS.GIT
    repo_root: str
    ref_type: RefType = RefType.NONE
    ref_name: str = ''
    go_source: str = ''
    redirect_url: str = ''
    disabled: bool = False

    @model_validator(mode='after')
    def check_ref(self) -> 'PackageSettings':
        if (self.ref_type != RefType.NONE) != (self.ref_name != ''):
            raise ValueError("ref_type and ref_name must be set together")
        return self


class DomainSettings(BaseModel):
    fqdn: str
    disabled: bool = False
    packages: list[PackageSettings] = []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(yaml_file=DEFAULT_CONFIG_FILE)

    # Primary domain of the service; requests for it are not package requests.
    domain: str = ''
    tls: bool = False
    host: str = '127.0.0.1'
    port: int = 8080
    log_level: str = 'INFO'
    upstream_timeout: float = 15.0
    upload_pack_mode: Literal['proxy', 'redirect'] = 'proxy'
    domains: list[DomainSettings] = []

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_file = os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE)
        return (init_settings, YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file))

    @property
    def scheme(self) -> str:
        return 'https' if self.tls else 'http'

    def build_registry(self) -> StaticRegistry:
        registry = StaticRegistry()
        for domain in self.domains:
            registry.add_domain(domain.fqdn, disabled=domain.disabled)
            for package in domain.packages:
                registry.add_package(domain.fqdn, PackageEntry(
                    path=package.path,
                    vcs=package.vcs,
                    repo_root=package.repo_root,
                    ref_type=package.ref_type,
                    ref_name=package.ref_name,
                    go_source=package.go_source,
                    redirect_url=package.redirect_url,
                    disabled=package.disabled,
                ))
        return registry
