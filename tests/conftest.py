import itertools
import json
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock
from urllib.parse import parse_qs

import httpx
import pytest

from settings import Settings

JPEG_BYTES = b"\xff\xd8\xff" + b"\x00" * 4096


def make_settings(**overrides) -> Settings:
    """Fully configured settings with zero sleeps. No real credentials."""
    values = dict(
        openai_api_key="sk-test",
        openai_assistant_id="asst_test",
        replicate_token="r8_test",
        tinypng_key="tinify-test",
        imgbb_key="imgbb-test",
        poll_interval_s=0,
        retry_delays_s=[0],
        sub_batch_pause_s=0,
        run_poll_attempts=3,
        upscale_timeout_s=5,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def bare_settings() -> Settings:
    """No capability configured at all."""
    return make_settings(
        openai_api_key=None,
        openai_assistant_id=None,
        replicate_token=None,
        tinypng_key=None,
        imgbb_key=None,
    )


# ---------------------------------------------------------------------------
# Fake HTTP capabilities (Replicate, TinyPNG, ImgBB, image hosts)
# ---------------------------------------------------------------------------

class FakeServices:
    """In-process stand-in for every HTTP capability the pipeline talks to.

    Tweak the public attributes before running a stage to script failures.
    """

    def __init__(self):
        self.prediction_create_status = 201
        self.polls_before_done = 1
        self.failing_images: set[str] = set()
        self.stuck_images: set[str] = set()
        self.shrink_status = 201
        self.upload_status = 200
        self.download_status = 200
        # Maps the requested bounding box to the size (KB) of the converted file.
        self.convert_size_kb = lambda box_px: 250
        self.requests: list[httpx.Request] = []
        self.convert_boxes: list[int] = []
        self.uploaded_names: list[str] = []
        self._predictions: dict[str, dict] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            host = request.url.host
            if host == "api.replicate.com":
                return self._replicate(request)
            if host == "api.tinify.com":
                return self._tinify(request)
            if host == "api.imgbb.com":
                return self._imgbb(request)
            if self.download_status != 200:
                return httpx.Response(self.download_status)
            return httpx.Response(200, content=JPEG_BYTES)

    def count(self, host: str, method: str | None = None) -> int:
        return sum(
            1 for r in self.requests
            if r.url.host == host and (method is None or r.method == method)
        )

    def _replicate(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            if self.prediction_create_status != 201:
                return httpx.Response(self.prediction_create_status, json={"detail": "nope"})
            payload = json.loads(request.content)
            prediction_id = f"pred{next(self._ids)}"
            self._predictions[prediction_id] = {"image": payload["input"]["image"], "polls": 0}
            return httpx.Response(201, json={"id": prediction_id, "status": "starting"})

        prediction_id = request.url.path.rsplit("/", 1)[-1]
        prediction = self._predictions[prediction_id]
        prediction["polls"] += 1
        image = prediction["image"]
        if image in self.stuck_images or prediction["polls"] <= self.polls_before_done:
            return httpx.Response(200, json={"id": prediction_id, "status": "processing"})
        if image in self.failing_images:
            return httpx.Response(200, json={"id": prediction_id, "status": "failed", "error": "CUDA OOM"})
        return httpx.Response(200, json={
            "id": prediction_id,
            "status": "succeeded",
            "output": f"https://replicate.delivery/{prediction_id}/out.png",
        })

    def _tinify(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/shrink":
            if self.shrink_status != 201:
                return httpx.Response(self.shrink_status, json={"error": "Unsupported"})
            output_id = next(self._ids)
            return httpx.Response(201, json={
                "input": {"size": len(request.content), "type": "image/jpeg"},
                "output": {"size": 1024, "url": f"https://api.tinify.com/output/{output_id}"},
            })
        options = json.loads(request.content)
        box = options["resize"]["width"]
        self.convert_boxes.append(box)
        return httpx.Response(200, content=b"W" * (self.convert_size_kb(box) * 1024))

    def _imgbb(self, request: httpx.Request) -> httpx.Response:
        if self.upload_status != 200:
            return httpx.Response(self.upload_status, json={"success": False, "error": {"message": "bad"}})
        form = parse_qs(request.content.decode())
        name = form["name"][0]
        self.uploaded_names.append(name)
        upload_id = next(self._ids)
        return httpx.Response(200, json={
            "success": True,
            "data": {"url": f"https://i.ibb.co/{upload_id}/{name}.webp"},
        })


@pytest.fixture
def services(monkeypatch) -> FakeServices:
    fake = FakeServices()

    def client_factory(settings, **kwargs):
        kwargs.setdefault("timeout", settings.http_timeout_s)
        return httpx.Client(transport=httpx.MockTransport(fake.handler), **kwargs)

    monkeypatch.setattr("pipeline.stage3_enhance.build_client", client_factory)
    monkeypatch.setattr("pipeline.stage4_finish.build_client", client_factory)
    return fake


# ---------------------------------------------------------------------------
# Fake OpenAI assistant
# ---------------------------------------------------------------------------

def assistant_page(text: str) -> SimpleNamespace:
    """A messages.list() page whose newest message is an assistant text reply."""
    message = SimpleNamespace(
        role="assistant",
        content=[SimpleNamespace(type="text", text=SimpleNamespace(value=text))],
    )
    return SimpleNamespace(data=[message])


def results_reply(count: int, prefix: str = "Red sneaker") -> str:
    return json.dumps({
        "results": [
            {"altTag": f"{prefix} view {i}", "seoFilename": f"red-sneaker-view-{i}"}
            for i in range(1, count + 1)
        ]
    })


def make_openai_client(replies: list[str]) -> MagicMock:
    """Mock OpenAI client: every run completes, replies are returned in order."""
    client = MagicMock()
    threads = client.beta.threads
    thread_ids = itertools.count(1)
    run_ids = itertools.count(1)
    threads.create.side_effect = lambda: SimpleNamespace(id=f"thread_{next(thread_ids)}")
    threads.runs.create.side_effect = (
        lambda **kwargs: SimpleNamespace(id=f"run_{next(run_ids)}", status="queued")
    )
    threads.runs.retrieve.side_effect = (
        lambda run_id, thread_id: SimpleNamespace(id=run_id, status="completed")
    )
    threads.messages.list.side_effect = [assistant_page(text) for text in replies]
    return client
