from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse, Response, StreamingResponse
from jinja2 import Environment
from starlette.background import BackgroundTask

from access_log import AccessLogger
from package_resolution import (
    PackageRegistry,
    PackageResolution,
    RefType,
    ResolutionAdapter,
    ResolutionError,
    VCS,
    split_host,
)
from pkt_line import PktLineError, RefNotFound, rewrite_info_refs
from vanity_settings import Settings

NO_CACHE_HEADERS = {
    "Expires": "Fri, 01 Jan 1980 00:00:00 GMT",
    "Pragma": "no-cache",
    "Cache-Control": "no-cache, max-age=0, must-revalidate",
}
ADVERTISEMENT_MEDIA_TYPE = 'application/x-git-upload-pack-advertisement'
INFO_REFS_SUFFIX = '/info/refs'
UPLOAD_PACK_SUFFIX = '/git-upload-pack'
UPLOAD_PACK_SERVICE = 'git-upload-pack'
FORWARDED_REQUEST_HEADERS = ('user-agent', 'accept', 'accept-encoding', 'content-type', 'content-encoding')
FORWARDED_RESPONSE_HEADERS = ('content-type', 'content-encoding')

PACKAGE_RESOLUTION_TEMPLATE = Environment(autoescape=True).from_string("""<!DOCTYPE html>
<html>
<head>
<meta http-equiv="Content-Type" content="text/html; charset=utf-8">
<meta name="go-import" content="{{ go_import }}">
{%- if go_source %}
<meta name="go-source" content="{{ go_source }}">
{%- endif %}
{%- if redirect_url %}
<meta http-equiv="refresh" content="0; url={{ redirect_url }}">
{%- endif %}
</head>
<body>
{%- if redirect_url %}
Redirecting to <a href="{{ redirect_url }}">{{ redirect_url }}</a>
{%- else %}
go get {{ import_prefix }}
{%- endif %}
</body>
</html>
""")

logger = logging.getLogger(__name__)

Handler = Callable[[Request, str, str], Awaitable[Response]]


class PackageNotHandled(Exception):
    pass


class HandlerError(Exception):
    def __init__(self, message: str, resolution: Optional[PackageResolution] = None) -> None:
        if resolution is not None:
            message = (
                f"{message} (repo root {resolution.repo_root}, "
                f"ref {resolution.ref_type.value or '-'} {resolution.ref_name or '-'})"
            )
        super().__init__(message)


def text_response(status_code: int, message: str) -> PlainTextResponse:
    return PlainTextResponse(message + '\n', status_code=status_code)


def text_server_error() -> PlainTextResponse:
    return text_response(500, 'Internal Server Error')


def package_not_found(import_path: str) -> PlainTextResponse:
    return text_response(404, f'Not Found: package {import_path}')


def upstream_url(repo_root: str, suffix: str) -> str:
    root = repo_root.rstrip('/').removesuffix('.git')
    return root + '.git' + suffix


def go_import(resolution: PackageResolution, scheme: str) -> str:
    repo_root = resolution.repo_root
    if resolution.ref_type != RefType.NONE:
        # Pinned packages are fetched through this service so the ref
        # advertisement can be rewritten.
        repo_root = f'{scheme}://{resolution.import_prefix}'
    return f'{resolution.import_prefix} {resolution.vcs.value} {repo_root}'


class PackageServer:
    def __init__(
        self,
        settings: Settings,
        registry: PackageRegistry,
        client: Optional[httpx.AsyncClient] = None,
        access_logger: Optional[AccessLogger] = None,
    ) -> None:
        self.settings = settings
        self.resolver = ResolutionAdapter(registry)
        self._owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.upstream_timeout),
                limits=httpx.Limits(max_connections=100),
                follow_redirects=True,
            )
        self.client = client
        self.access_log = access_logger or AccessLogger()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def is_package_host(self, host: str) -> bool:
        domain = self.settings.domain
        return not domain or split_host(host).lower() != domain.lower()

    async def dispatch(self, request: Request) -> Response:
        started = time.monotonic()
        request.state.started = started
        host = request.headers.get('host', '')
        if not self.is_package_host(host):
            raise PackageNotHandled(host)

        path = request.url.path
        handler: Handler
        if path.endswith(INFO_REFS_SUFFIX):
            handler, package_path = self.git_info_refs, path[:-len(INFO_REFS_SUFFIX)]
        elif path.endswith(UPLOAD_PACK_SUFFIX):
            handler, package_path = self.git_upload_pack, path[:-len(UPLOAD_PACK_SUFFIX)]
        else:
            handler, package_path = self.resolve_package, path

        try:
            response = await handler(request, host, package_path)
        except PackageNotHandled:
            raise
        except HandlerError as e:
            logger.error("%s", e)
            response = text_server_error()
        except Exception:
            logger.exception("package request %s %s", request.method, request.url)
            response = text_server_error()
        self.access_log.log(request, response.status_code, started)
        return response

    async def not_handled(self, request: Request, exc: Exception) -> Response:
        response = text_response(404, 'Not Found')
        self.access_log.log(request, response.status_code, getattr(request.state, 'started', time.monotonic()))
        return response

    async def resolve_package(self, request: Request, host: str, path: str) -> Response:
        import_path = split_host(host) + path
        try:
            resolution = await self.resolver.resolve(host, path)
        except ResolutionError:
            return package_not_found(import_path)
        except Exception as e:
            raise HandlerError(f"package resolver: resolve package {import_path}: {e!r}") from e

        if resolution.disabled:
            return package_not_found(import_path)

        return HTMLResponse(PACKAGE_RESOLUTION_TEMPLATE.render(
            import_prefix=resolution.import_prefix,
            go_import=go_import(resolution, self.settings.scheme),
            go_source=resolution.go_source,
            redirect_url=resolution.redirect_url,
        ))

    async def _resolve_git(self, operation: str, host: str, path: str) -> PackageResolution:
        try:
            resolution = await self.resolver.resolve(host, path)
        except ResolutionError as e:
            raise PackageNotHandled(f'{host}{path}') from e
        except Exception as e:
            raise HandlerError(f"{operation}: resolve package {split_host(host)}{path}: {e!r}") from e
        if resolution.disabled or resolution.vcs != VCS.GIT:
            raise PackageNotHandled(f'{host}{path}')
        return resolution

    async def git_info_refs(self, request: Request, host: str, path: str) -> Response:
        resolution = await self._resolve_git('package git info refs', host, path)
        service = request.query_params.get('service')
        if service != UPLOAD_PACK_SERVICE:
            return text_response(400, f"Unsupported service '{service}'")

        refs_url = upstream_url(resolution.repo_root, f'{INFO_REFS_SUFFIX}?service={UPLOAD_PACK_SERVICE}')
        try:
            upstream = await self.client.get(refs_url)
        except httpx.HTTPError as e:
            raise HandlerError(f"package git info refs: http get {refs_url}: {e!r}", resolution) from e

        if upstream.status_code != 200:
            logger.warning("package git info refs: http get %s: status code %s", refs_url, upstream.status_code)
            return text_response(upstream.status_code, f'{upstream.status_code} {upstream.reason_phrase}')

        data = upstream.content
        if resolution.ref_type != RefType.NONE:
            try:
                data = rewrite_info_refs(data, resolution.ref_type.value, resolution.ref_name)
            except RefNotFound as e:
                logger.warning("package git info refs: alter refs %s: %s", refs_url, e)
                return text_response(404, f'Not Found: {resolution.ref_type.value} {resolution.ref_name}')
            except (PktLineError, ValueError) as e:
                raise HandlerError(f"package git info refs: alter refs {refs_url}: {e}", resolution) from e

        return Response(data, media_type=ADVERTISEMENT_MEDIA_TYPE, headers=NO_CACHE_HEADERS)

    async def git_upload_pack(self, request: Request, host: str, path: str) -> Response:
        resolution = await self._resolve_git('package git upload pack', host, path)
        url = upstream_url(resolution.repo_root, UPLOAD_PACK_SUFFIX)
        if request.url.query:
            url += '?' + request.url.query

        if self.settings.upload_pack_mode == 'redirect':
            return RedirectResponse(url, status_code=301)

        headers = {name: request.headers[name] for name in FORWARDED_REQUEST_HEADERS if name in request.headers}
        body = await request.body()
        upstream_request = self.client.build_request(request.method, url, headers=headers, content=body or None)
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            raise HandlerError(f"package git upload pack: {request.method} {url}: {e!r}", resolution) from e

        response_headers = {
            name: upstream.headers[name] for name in FORWARDED_RESPONSE_HEADERS if name in upstream.headers
        }
        response_headers.update(NO_CACHE_HEADERS)
        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            headers=response_headers,
            background=BackgroundTask(upstream.aclose),
        )


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[PackageRegistry] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    if settings is None:
        settings = Settings()
    if registry is None:
        registry = settings.build_registry()
    server = PackageServer(settings, registry, client)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await server.aclose()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.server = server
    app.add_exception_handler(PackageNotHandled, server.not_handled)
    app.add_api_route('/{path:path}', server.dispatch, methods=['GET', 'POST'], include_in_schema=False)
    return app


def main() -> None:
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    logger.info("serving packages on %s:%s", settings.host, settings.port)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, access_log=False)


if __name__ == '__main__':
    main()
