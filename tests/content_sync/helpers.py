"""Stubs and builders shared by ContentSync tests."""

from __future__ import annotations

import io
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List

import httpx
from PIL import Image


@dataclass
class StubProvider:
    """Fixed host resources for ResourceManager tests."""

    cpu_cores: int = 8
    free_memory_gb: float = 16.0
    total_memory_gb: float = 32.0

    def get_cpu_cores(self) -> int:
        return self.cpu_cores

    def get_free_memory_gb(self) -> float:
        return self.free_memory_gb

    def get_total_memory_gb(self) -> float:
        return self.total_memory_gb


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class AssetServer:
    """Routes URLs to canned responses and counts requests per URL."""

    routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = field(default_factory=dict)
    calls: Counter = field(default_factory=Counter)

    def add(self, url: str, body: bytes, *, content_type: str = "image/png", status: int = 200) -> None:
        self.routes[url] = lambda request: httpx.Response(
            status, content=body, headers={"Content-Type": content_type}
        )

    def add_sequence(self, url: str, responses: List[httpx.Response]) -> None:
        """Serve ``responses`` in order, repeating the last one."""

        queue = list(responses)

        def handler(request: httpx.Request) -> httpx.Response:
            return queue.pop(0) if len(queue) > 1 else queue[0]

        self.routes[url] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.calls[url] += 1
        handler = self.routes.get(url)
        if handler is None:
            return httpx.Response(404, content=b"not found")
        return handler(request)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


def png_bytes(width: int = 4, height: int = 4, color: tuple = (200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def noisy_png_bytes(width: int, height: int) -> bytes:
    """Incompressible RGB PNG, large enough to cross the processing threshold."""

    image = Image.frombytes("RGB", (width, height), bytes((i * 7919) % 251 for i in range(width * height * 3)))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()
