import pytest
from rich.console import Console

from stackbillinstaller.errors import InstallerError
from stackbillinstaller.services.download import DownloadService


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class FakeResponse:
    def __init__(self, payload: bytes):
        self.payload = payload
        self.text = payload.decode("utf-8")
        self.headers = {"Content-Length": str(len(payload))}

    def raise_for_status(self):
        return None

    def iter_content(self, chunk_size=8192):
        yield self.payload

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeRequestsModule:
    class RequestException(Exception):
        pass

    def __init__(self, payload: bytes):
        self.payload = payload
        self.urls = []

    def get(self, url, *_args, **_kwargs):
        self.urls.append(url)
        return FakeResponse(self.payload)


class FlakyRequestsModule:
    class RequestException(Exception):
        pass

    def __init__(self, payload: bytes, failures: int = 1):
        self.payload = payload
        self.failures = failures
        self.calls = 0

    def get(self, *_args, **_kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.RequestException("temporary download error")
        return FakeResponse(self.payload)


def _service(requests_module, **kwargs):
    return DownloadService(
        logger=DummyLogger(),
        console=Console(record=True),
        requests_module=requests_module,
        retry_backoff_seconds=0.0,
        **kwargs,
    )


def test_download_file_writes_payload(tmp_path):
    requests_module = FakeRequestsModule(payload=b"#!/bin/sh\necho k3s\n")

    dest = tmp_path / "scripts" / "install-k3s.sh"
    _service(requests_module).download_file("https://get.k3s.io", str(dest), description="k3s installer")

    assert dest.read_bytes() == b"#!/bin/sh\necho k3s\n"
    assert requests_module.urls == ["https://get.k3s.io"]


def test_download_service_retries_transient_request_errors(tmp_path):
    requests_module = FlakyRequestsModule(payload=b"retried")
    service = _service(requests_module, retry_count=1)

    dest = tmp_path / "get-helm-3"
    service.download_file("https://example.com/get-helm-3", str(dest), description="helm installer")

    assert requests_module.calls == 2
    assert dest.read_bytes() == b"retried"


def test_download_service_gives_up_after_retries(tmp_path):
    requests_module = FlakyRequestsModule(payload=b"never", failures=5)
    service = _service(requests_module, retry_count=1)

    with pytest.raises(InstallerError, match="Download failed for istio"):
        service.download_file("https://istio.io/downloadIstio", str(tmp_path / "istio.sh"), description="istio")

    assert requests_module.calls == 2


def test_download_service_refuses_plain_http(tmp_path):
    requests_module = FakeRequestsModule(payload=b"unused")

    with pytest.raises(InstallerError, match="insecure transport"):
        _service(requests_module).download_file("http://example.com/kubectl", str(tmp_path / "kubectl"))

    assert requests_module.urls == []


def test_fetch_text_strips_response_body():
    requests_module = FakeRequestsModule(payload=b"v1.29.3\n")

    assert _service(requests_module).fetch_text("https://dl.k8s.io/release/stable.txt") == "v1.29.3"
