"""HTTP surface of the reporting server."""

import logging
import ssl
from typing import Optional

from aiohttp import web

from ..exceptions import NotFoundError, RegistryError
from ..vulns import format_report
from .controller import RegistryController

logger = logging.getLogger(__name__)

CONTROLLER_KEY = web.AppKey("controller", RegistryController)


def _controller(request: web.Request) -> RegistryController:
    return request.app[CONTROLLER_KEY]


def _repo(request: web.Request) -> str:
    repo = request.match_info.get("repo", "").strip("/")
    if not repo:
        raise web.HTTPNotFound(text="No repo given")
    return repo


async def index(request: web.Request) -> web.Response:
    result = _controller(request).index
    if result is None:
        return web.Response(status=503, text="Index has not been generated yet")
    return web.json_response(result.to_dict())


async def tags(request: web.Request) -> web.Response:
    repo = _repo(request)
    logger.info("fetching tags for %s", repo)
    try:
        result = await _controller(request).repository_tags(repo)
    except NotFoundError:
        return web.Response(status=404, text="No Tags found")
    except RegistryError as e:
        logger.error("getting tags for %s failed: %s", repo, e)
        return web.Response(status=500, text="Getting tags failed.")
    return web.json_response(result.to_dict())


async def _scan(request: web.Request):
    repo = _repo(request)
    tag = request.match_info.get("tag", "")
    if not tag:
        raise web.HTTPNotFound(text="No tag given")

    logger.info("fetching vulnerability report for %s:%s", repo, tag)
    try:
        return await _controller(request).vulnerabilities(repo, tag)
    except NotFoundError:
        raise web.HTTPNotFound(text=f"{repo}:{tag} not found")
    except RegistryError as e:
        logger.error("vulnerability scanning of %s:%s failed: %s", repo, tag, e)
        raise web.HTTPInternalServerError(text="Error during vulnerability scanning.")


async def vulnerabilities(request: web.Request) -> web.Response:
    report = await _scan(request)
    return web.Response(text=format_report(report))


async def vulnerabilities_json(request: web.Request) -> web.Response:
    report = await _scan(request)
    return web.json_response(report.to_dict())


def create_app(controller: RegistryController) -> web.Application:
    """Build the aiohttp application serving a controller's reports."""
    app = web.Application()
    app[CONTROLLER_KEY] = controller
    app.router.add_get("/", index)
    app.router.add_get("/repo/{repo:.+}/tags", tags)
    app.router.add_get("/repo/{repo:.+}/tag/{tag}/vulns.json", vulnerabilities_json)
    app.router.add_get("/repo/{repo:.+}/tag/{tag}/vulns", vulnerabilities)
    return app


async def serve(
    controller: RegistryController,
    host: str = "0.0.0.0",
    port: int = 8080,
    ssl_context: Optional[ssl.SSLContext] = None,
) -> None:
    """Serve the reports and regenerate the index until cancelled."""
    runner = web.AppRunner(create_app(controller))
    await runner.setup()
    site = web.TCPSite(runner, host, port, ssl_context=ssl_context)
    await site.start()
    logger.info("server listening on %s:%d", host, port)

    try:
        await controller.run_periodic()
    finally:
        await runner.cleanup()
