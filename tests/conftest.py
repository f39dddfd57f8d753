import threading

import pytest

from speedcheck_server.config import ServerConfig
from speedcheck_server.server import SpeedCheckServer


@pytest.fixture
def live_server():
    """SpeedCheckServer on an ephemeral port, running on a background thread."""
    server = SpeedCheckServer(ServerConfig(host="127.0.0.1", port=0))
    ready = threading.Event()
    thread = threading.Thread(
        target=server.start,
        kwargs={"ready_event": ready},
        name="live-server",
        daemon=True,
    )
    thread.start()
    if not ready.wait(timeout=10):
        pytest.fail("SpeedCheck server did not start")
    yield server
    server.stop()
    thread.join(timeout=10)
