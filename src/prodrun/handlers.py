"""
Built-in observability endpoints under ``/prodrun/``.

All of them answer 404 unless ``server.enable_status_urls`` is set.
"""

import asyncio
import gc
import os
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict

import psutil

from .middleware import Req
from .utils.errors import ConfigurationError, bad_request, not_found
from .utils.logging import get_logger
from .utils.stacks import dump_all_stacks

if TYPE_CHECKING:
    from .app import App


logger = get_logger("prodrun.handlers")


class StatusHandlers:
    """Serves status, stack, mem, config, test and metrics for one App."""

    def __init__(self, app: "App"):
        self.app = app

    def register(self) -> None:
        wrap = self.app.middleware.wrap
        router = self.app.web_app.router
        router.add_route("*", "/prodrun/config/{section}/{key}", wrap(self.handle_config))
        router.add_route("*", "/prodrun/config/{section}", wrap(self.handle_config))
        router.add_route("*", "/prodrun/{action}", wrap(self.dispatch))

    def _check_enabled(self) -> None:
        if not self.app.config.server.enable_status_urls:
            raise not_found("Not enabled")

    async def dispatch(self, req: Req) -> Any:
        self._check_enabled()
        action = req.request.match_info.get("action", "")
        handler = {
            "status": self.handle_status,
            "stack": self.handle_stack,
            "mem": self.handle_mem,
            "config": self.handle_config,
            "test": self.handle_test,
            "metrics": self.handle_metrics,
        }.get(action)
        if handler is None:
            raise not_found()
        return await handler(req)

    async def handle_status(self, req: Req) -> None:
        self._check_enabled()
        now = time.monotonic()
        requests = []
        async for entry in self.app.registry.snapshot():
            requests.append({
                "id": entry.id,
                "method": entry.method,
                "url": entry.url,
                "duration": now - entry.start_monotonic,
                "remote_ip": entry.remote_ip,
                "is_https": entry.is_https,
            })

        managers = {}
        for manager in (self.app.registry, self.app.watchdog):
            health = await manager.health_check()
            managers[manager.name] = {
                "healthy": health.healthy,
                "details": health.details,
                "error": health.error,
            }

        start_time = self.app.registry.start_time
        await req.send_json({
            "project_name": self.app.project_name,
            "app_name": self.app.app_name,
            "pid": os.getpid(),
            "start_time": start_time.isoformat(),
            "uptime_seconds": (datetime.now(timezone.utc) - start_time).total_seconds(),
            "num_workers": len(asyncio.all_tasks()),
            "requests": requests,
            "managers": managers,
        })

    async def handle_stack(self, req: Req) -> None:
        self._check_enabled()
        await req.send_text(dump_all_stacks())

    async def handle_mem(self, req: Req) -> None:
        self._check_enabled()
        if req.request.method == "POST":
            lines = ["Adjusting mem system"]
            if req.param_int("gc_now", 0) > 0:
                logger.info("gc_requested_by_handler")
                collected = gc.collect()
                lines.append(f"Ran GC, collected {collected} objects")
            threshold = req.param_int("gc_threshold", 0)
            if threshold > 0:
                old = gc.get_threshold()
                gc.set_threshold(threshold, *old[1:])
                info = f"Set GC threshold to [{threshold}] was [{old[0]}]"
                logger.info("gc_threshold_set", threshold=threshold, previous=old[0])
                lines.append(info)
            await req.send_text("\n".join(lines) + "\n")
            return

        memory = psutil.Process().memory_info()
        await req.send_json({
            "memory": memory._asdict(),
            "gc": {
                "enabled": gc.isenabled(),
                "threshold": gc.get_threshold(),
                "count": gc.get_count(),
                "stats": gc.get_stats(),
                "objects": len(gc.get_objects()),
            },
        })

    async def handle_config(self, req: Req) -> Any:
        self._check_enabled()
        section = req.request.match_info.get("section", "")
        key = req.request.match_info.get("key", "")
        loader = self.app.config_loader

        if req.request.method == "PUT":
            if not section:
                raise bad_request("No section in url")
            if not key:
                raise bad_request("No key in url")
            value = (await req.request.text()).strip()
            try:
                loader.set_override(section, key, value)
            except ConfigurationError as e:
                raise bad_request(e.message)

        config_map: Dict[str, Dict[str, Any]] = loader.get_config().as_map()
        if not section:
            return await req.send_json(config_map)
        if section not in config_map:
            raise not_found("No such section")
        if not key:
            return await req.send_json(config_map[section])
        if key not in config_map[section]:
            raise not_found("No such key in section")
        return await req.send_json(config_map[section][key])

    async def handle_test(self, req: Req) -> None:
        self._check_enabled()
        secs = req.param_float("secs", 0.0)
        kbytes = req.param_int("kbytes", 0)
        logger.debug("test_request", secs=secs, kbytes=kbytes)

        buf = bytearray(b"\x01" * (kbytes * 1024))
        await asyncio.sleep(secs)
        await req.send_text(
            f"Slow request took additional {secs:g} secs and allocated additional {len(buf) // 1024} KB\n"
        )

    async def handle_metrics(self, req: Req) -> None:
        self._check_enabled()
        await req.send_json(self.app.metrics.get_metrics())


__all__ = ['StatusHandlers']
