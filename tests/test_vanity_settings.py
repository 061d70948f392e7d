from pathlib import Path

import pydantic
import pytest

from package_resolution import RefType, VCS
from vanity_settings import CONFIG_ENV_VAR, PackageSettings, Settings

CONFIG = """
domain: gopherproxy.example
tls: true
upload_pack_mode: redirect
domains:
  - fqdn: example.org
    packages:
      - path: /lib
        repo_root: https://github.com/acme/lib
        ref_type: tag
        ref_name: v1.2.0
      - path: /tools
        vcs: hg
        repo_root: https://hg.example.org/tools
  - fqdn: retired.example.org
    disabled: true
"""


def test_settings_load_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / 'config.yaml'
    config.write_text(CONFIG)
    monkeypatch.setenv(CONFIG_ENV_VAR, str(config))

    settings = Settings()

    assert settings.domain == 'gopherproxy.example'
    assert settings.scheme == 'https'
    assert settings.upload_pack_mode == 'redirect'
    assert settings.upstream_timeout == 15.0
    lib = settings.domains[0].packages[0]
    assert lib.ref_type == RefType.TAG
    assert settings.domains[0].packages[1].vcs == VCS.HG


def test_init_values_override_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / 'config.yaml'
    config.write_text(CONFIG)
    monkeypatch.setenv(CONFIG_ENV_VAR, str(config))

    assert Settings(tls=False).scheme == 'http'


def test_build_registry(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / 'missing.yaml'))
    settings = Settings(domains=[{'fqdn': 'example.org', 'packages': [{'path': 'lib', 'repo_root': 'https://github.com/acme/lib'}]}])

    resolution = settings.build_registry().resolve_package('example.org/lib/sub')

    assert resolution.import_prefix == 'example.org/lib'
    assert resolution.repo_root == 'https://github.com/acme/lib'


def test_package_ref_fields_set_together() -> None:
    with pytest.raises(pydantic.ValidationError):
        PackageSettings(repo_root='https://github.com/acme/lib', ref_type=RefType.BRANCH)
