from rich.console import Console

from stackbillinstaller.models import ServerContext
from stackbillinstaller.services.handshake import (
    CANDIDATE_PATHS,
    ConfigurationStrategy,
    ControllerHandshake,
    default_strategies,
    flat_payload,
    structured_payload,
)

SECRETS = {"mysql": "MyPass123abc", "mongodb": "MongoPass456de", "rabbitmq": "RabbitPass789f"}


class RecordingLogger:
    def __init__(self):
        self.messages = []

    def debug(self, message, *args, **_kwargs):
        self.messages.append(message % args if args else message)

    def info(self, message, *args, **_kwargs):
        self.messages.append(message % args if args else message)

    def warning(self, message, *args, **_kwargs):
        self.messages.append(message % args if args else message)


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


class FakeRequestsModule:
    class RequestException(Exception):
        pass

    def __init__(self, statuses):
        self.statuses = statuses
        self.posts = []

    def post(self, url, timeout=None, **kwargs):
        self.posts.append((url, kwargs))
        status = self.statuses.get(url.replace("http://127.0.0.1:8888", ""), 404)
        if status is None:
            raise self.RequestException("connection reset")
        return FakeResponse(status)


def _context(tmp_path):
    cert = tmp_path / "cert.pem"
    key = tmp_path / "key.pem"
    cert.write_bytes(b"CERT")
    key.write_bytes(b"KEY")
    return ServerContext(
        server_ip="10.0.0.5",
        namespace="sb-system",
        domain="portal.example.com",
        ssl_cert_path=str(cert),
        ssl_key_path=str(key),
    )


def _handshake(requests_module, logger=None):
    return ControllerHandshake(
        logger=logger or RecordingLogger(), console=Console(record=True), requests_module=requests_module
    )


def test_default_strategies_try_every_path_as_json_then_form():
    strategies = default_strategies()

    assert len(strategies) == 2 * len(CANDIDATE_PATHS)
    assert strategies[0].path == "/api/configuration"
    assert strategies[0].encoding == "json"
    assert strategies[len(CANDIDATE_PATHS)].encoding == "form"


def test_payloads_describe_every_service(tmp_path):
    context = _context(tmp_path)

    structured = structured_payload(context, SECRETS)
    flat = flat_payload(context, SECRETS)

    assert structured["mongodb"]["database"] == "stackbill_usage"
    assert structured["ssl"]["certificate"] == "Q0VSVA=="
    assert structured["nfs"] == {"server": "10.0.0.5", "path": "/data/stackbill"}
    assert flat["rabbitmqPassword"] == SECRETS["rabbitmq"]
    assert flat["mysqlPort"] == "3306"


def test_first_accepting_endpoint_wins(tmp_path):
    requests_module = FakeRequestsModule({"/api/configuration": None, "/api/setup": 500, "/api/config": 201})

    outcome = _handshake(requests_module).attempt("http://127.0.0.1:8888/", _context(tmp_path), SECRETS)

    assert outcome.configured is True
    assert outcome.endpoint == "/api/config"
    assert outcome.strategy == "json /api/config"
    assert outcome.attempts == 3
    assert len(requests_module.posts) == 3
    assert requests_module.posts[-1][1]["json"]["mysql"]["password"] == SECRETS["mysql"]


def test_form_strategy_sends_form_body(tmp_path):
    requests_module = FakeRequestsModule({"/setup": 200})
    strategies = [ConfigurationStrategy("form /setup", "/setup", flat_payload, "form")]

    outcome = _handshake(requests_module).attempt("http://127.0.0.1:8888", _context(tmp_path), SECRETS, strategies)

    assert outcome.configured is True
    assert requests_module.posts[0][1]["data"]["domain"] == "portal.example.com"


def test_exhaustion_is_a_normal_outcome_without_leaking_secrets(tmp_path):
    logger = RecordingLogger()
    requests_module = FakeRequestsModule({"/api/setup": 401})

    outcome = _handshake(requests_module, logger).attempt("http://127.0.0.1:8888", _context(tmp_path), SECRETS)

    assert outcome.configured is False
    assert outcome.exhausted is True
    assert outcome.attempts == 2 * len(CANDIDATE_PATHS)
    assert any("HTTP 401" in message for message in logger.messages)
    assert all(secret not in message for message in logger.messages for secret in SECRETS.values())
