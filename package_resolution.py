from dataclasses import dataclass
from enum import Enum
import logging
from typing import Protocol

from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)


class VCS(str, Enum):
    GIT = 'git'
    HG = 'hg'
    BZR = 'bzr'
    SVN = 'svn'


class RefType(str, Enum):
    NONE = ''
    BRANCH = 'branch'
    TAG = 'tag'


class ResolutionError(Exception):
    pass


class DomainNotFound(ResolutionError):
    pass


class PackageNotFound(ResolutionError):
    pass


@dataclass(frozen=True)
class PackageResolution:
    import_prefix: str
    vcs: VCS
    repo_root: str
    ref_type: RefType = RefType.NONE
    ref_name: str = ''
    go_source: str = ''
    redirect_url: str = ''
    disabled: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, 'vcs', VCS(self.vcs))
        object.__setattr__(self, 'ref_type', RefType(self.ref_type))
        if (self.ref_type != RefType.NONE) != (self.ref_name != ''):
            raise ValueError(
                f"{self.import_prefix}: ref type {self.ref_type.value!r} and ref name {self.ref_name!r} must be set together"
            )


class PackageRegistry(Protocol):
    def resolve_package(self, path: str) -> PackageResolution:
        ...


@dataclass(frozen=True)
class PackageEntry:
    path: str
    vcs: VCS
    repo_root: str
    ref_type: RefType = RefType.NONE
    ref_name: str = ''
    go_source: str = ''
    redirect_url: str = ''
    disabled: bool = False


class StaticRegistry:
    """Registry over a fixed set of domains and their packages.

    Package paths are matched on ``/`` boundaries, longest registered
    prefix first, so ``example.com/pkg/sub`` resolves to the package
    registered at ``/pkg`` when ``/pkg/sub`` itself is not registered.
    """

    def __init__(self) -> None:
        self._domains: dict[str, dict[str, PackageEntry]] = {}
        self._disabled_domains: set[str] = set()

    def add_domain(self, fqdn: str, disabled: bool = False) -> None:
        fqdn = fqdn.lower()
        self._domains.setdefault(fqdn, {})
        if disabled:
            self._disabled_domains.add(fqdn)
        else:
            self._disabled_domains.discard(fqdn)

    def add_package(self, fqdn: str, entry: PackageEntry) -> None:
        fqdn = fqdn.lower()
        if fqdn not in self._domains:
            raise DomainNotFound(fqdn)
        path = normalize_package_path(entry.path)
        self._domains[fqdn][path] = entry

    def resolve_package(self, path: str) -> PackageResolution:
        fqdn, _, package_path = path.partition('/')
        fqdn = fqdn.lower()
        packages = self._domains.get(fqdn)
        if packages is None:
            raise DomainNotFound(fqdn)

        parts = ('/' + package_path).rstrip('/').split('/')
        for i in range(len(parts), 0, -1):
            candidate = '/'.join(parts[:i])
            entry = packages.get(candidate)
            if entry is not None:
                break
        else:
            raise PackageNotFound(path)

        return PackageResolution(
            import_prefix=fqdn + candidate,
            vcs=entry.vcs,
            repo_root=entry.repo_root,
            ref_type=entry.ref_type,
            ref_name=entry.ref_name,
            go_source=entry.go_source,
            redirect_url=entry.redirect_url,
            disabled=fqdn in self._disabled_domains or entry.disabled,
        )


def normalize_package_path(path: str) -> str:
    path = path.strip().rstrip('/')
    if path and not path.startswith('/'):
        path = '/' + path
    return path


def split_host(host: str) -> str:
    """Strip an optional port from a Host header value."""
    if host.startswith('['):
        end = host.find(']')
        if end > 0:
            return host[1:end]
        return host
    if host.count(':') == 1:
        return host.split(':', 1)[0]
    return host


class ResolutionAdapter:
    def __init__(self, registry: PackageRegistry) -> None:
        self._registry = registry

    async def resolve(self, host: str, path: str) -> PackageResolution:
        """Resolve a request host and URL path through the registry.

        Raises DomainNotFound or PackageNotFound for unknown packages; any
        other exception is a registry failure and propagates unchanged.
        """
        key = split_host(host) + path
        logger.debug("resolve package %s", key)
        return await run_in_threadpool(self._registry.resolve_package, key)
