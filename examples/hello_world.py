#!/usr/bin/env python3
"""
Minimal prodrun service.

Run it directly, or under the supervisor:

    prodrun-supervisor --project demo --service hello --run-dir /tmp \
        --exe "$(which python3)" -- examples/hello_world.py

``kill -USR2 <pid>`` restarts it without dropping connections,
``kill -TERM <pid>`` drains and exits.
"""

import asyncio
import sys
from pathlib import Path

# Add src to path for demo
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from prodrun import App, Req
from prodrun.utils.errors import HTTPError, WebSocketCloseMessage


async def hello(req: Req) -> None:
    await req.send_text(f"Hello, {req.param('name', 'world')}!\n")


async def slow(req: Req) -> None:
    req.can_be_slow = True
    delay = req.param_duration("delay")
    await asyncio.sleep(delay.total_seconds())
    await req.send_json({"slept": delay.total_seconds(), "request_id": req.id})


async def teapot(req: Req) -> None:
    raise HTTPError(418, "I'm a teapot")


async def echo(req: Req) -> None:
    async for msg in req.ws:
        if msg.data == "bye":
            raise WebSocketCloseMessage(1000, "goodbye")
        await req.ws_send_text(msg.data)


def main() -> None:
    app = App(
        "demo",
        "hello",
        config={
            "server": {"listen_port": 8080, "enable_status_urls": True},
            "logging": {"format": "console"},
            "runtime": {"slow_req_secs": 2, "max_requests": 10000},
        },
    )
    app.handle_map({"/": hello, "/teapot": teapot})
    app.handle_func("/slow", slow, "delay")
    app.handle_websocket_func("/echo", echo)

    app.run()


if __name__ == "__main__":
    main()
