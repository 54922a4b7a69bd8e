import asyncio
import logging
import sys
import threading
from collections import Counter
from pathlib import Path

import pytest
from aiohttp import test_utils, web

# Put the repository root on sys.path so tests import the rulesets package.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def list_server():
    """
    Serve static lists from a background event loop.

    For code that calls asyncio.run itself (CLI mains, proc_* jobs). Call the
    fixture with {path: (status, body)}; it returns (url_for, hits) where
    `hits` counts requests per path.
    """
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    servers = []

    def _start(routes: dict):
        hits: Counter = Counter()
        app = web.Application()
        for path, (status, body) in routes.items():
            async def handler(request, status=status, body=body):
                hits[request.path] += 1
                return web.Response(status=status, body=body.encode("utf-8"))

            app.router.add_get(path, handler)
        server = test_utils.TestServer(app)
        if not thread.is_alive():
            loop.run_until_complete(server.start_server())
            thread.start()
        else:
            asyncio.run_coroutine_threadsafe(server.start_server(), loop).result(10)
        servers.append(server)
        return (lambda path: str(server.make_url(path))), hits

    yield _start

    if thread.is_alive():
        for server in servers:
            asyncio.run_coroutine_threadsafe(server.close(), loop).result(10)
        loop.call_soon_threadsafe(loop.stop)
        thread.join(10)
    loop.close()


@pytest.fixture
def restore_logging():
    """Undo the root logger reconfiguration done by pipeline.main."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
