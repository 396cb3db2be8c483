from __future__ import annotations

import threading
import urllib.error
import urllib.request

from converge.src.health import start_health_server
from converge.src.metrics import METRICS


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    """Liveness, readiness and metrics endpoints."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        assert _get(f"{self.base_url}/healthz") == (200, "ok")

    def test_readyz_returns_503_before_sync(self) -> None:
        assert _get(f"{self.base_url}/readyz") == (503, "synced=false")

    def test_readyz_tracks_ready_event(self) -> None:
        self.ready.set()
        assert _get(f"{self.base_url}/readyz") == (200, "synced=true")

        self.ready.clear()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 503

    def test_metrics_exposes_controller_series(self) -> None:
        METRICS.dropped_keys_total.labels(controller="health-test").inc()

        status, body = _get(f"{self.base_url}/metrics")

        assert status == 200
        assert 'converge_dropped_keys_total{controller="health-test"} 1.0' in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404
