import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from assessflow.main import ai_client, create_app, hub, queue_backend
from assessflow.store import store

JWT_SECRET = "jwt_test_secret"


def issue_token(*, user_id: str, secret: str = JWT_SECRET, minutes: int = 30) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def sample_assessment(**overrides) -> dict:
    payload = {
        "assessmentName": "AI-Driven Talent Mapping",
        "riasec": {
            "realistic": 40,
            "investigative": 85,
            "artistic": 60,
            "social": 50,
            "enterprising": 70,
            "conventional": 30,
        },
        "ocean": {
            "openness": 80,
            "conscientiousness": 65,
            "extraversion": 55,
            "agreeableness": 60,
            "neuroticism": 35,
        },
        "viaIs": {
            name: 50 + (idx % 5) * 10
            for idx, name in enumerate(
                [
                    "creativity",
                    "curiosity",
                    "judgment",
                    "loveOfLearning",
                    "perspective",
                    "bravery",
                    "perseverance",
                    "honesty",
                    "zest",
                    "love",
                    "kindness",
                    "socialIntelligence",
                    "teamwork",
                    "fairness",
                    "leadership",
                    "forgiveness",
                    "humility",
                    "prudence",
                    "selfRegulation",
                    "appreciationOfBeauty",
                    "gratitude",
                    "hope",
                    "humor",
                    "spirituality",
                ]
            )
        },
    }
    payload.update(overrides)
    return payload


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and not url.startswith("/api/v1/internal/"):
            if "Authorization" not in headers:
                user_id = headers.get("x-user-id") or "user_default"
                token = issue_token(user_id=str(user_id), secret=self._jwt_secret)
                headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


class FakeRedisClient:
    def __init__(self) -> None:
        self.kv: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.published: list[tuple[str, str]] = []

    def set(self, key: str, value: str) -> None:
        self.kv[key] = value

    def get(self, key: str):
        return self.kv.get(key)

    def rpush(self, key: str, value: str) -> None:
        self.lists.setdefault(key, []).append(value)

    def lpush(self, key: str, value: str) -> None:
        self.lists.setdefault(key, []).insert(0, value)

    def lpop(self, key: str):
        items = self.lists.get(key, [])
        if not items:
            return None
        return items.pop(0)

    def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    def lrange(self, key: str, start: int, end: int):
        items = self.lists.get(key, [])
        if end == -1:
            return list(items[start:])
        return list(items[start : end + 1])

    def lrem(self, key: str, count: int, value: str) -> int:
        items = self.lists.get(key, [])
        before = len(items)
        self.lists[key] = [x for x in items if x != value]
        return before - len(self.lists[key])

    def sadd(self, key: str, value: str) -> None:
        self.sets.setdefault(key, set()).add(value)

    def srem(self, key: str, value: str) -> None:
        self.sets.setdefault(key, set()).discard(value)

    def smembers(self, key: str):
        return set(self.sets.get(key, set()))

    def delete(self, *keys: str) -> None:
        for key in keys:
            self.kv.pop(key, None)
            self.lists.pop(key, None)
            self.sets.pop(key, None)

    def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


@pytest.fixture
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> FakeRedisClient:
    client = FakeRedisClient()

    class FakeRedisModule:
        class RedisError(Exception):
            pass

        class ConnectionError(RedisError):
            pass

        class Redis:
            @staticmethod
            def from_url(_dsn: str, decode_responses: bool = True):
                assert decode_responses is True
                return client

    monkeypatch.setattr("assessflow.queue_backend._import_redis", lambda: FakeRedisModule)
    monkeypatch.setattr("assessflow.notifications._import_redis", lambda: FakeRedisModule)
    return client


@pytest.fixture(autouse=True)
def reset_store(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    store.reset()
    if hasattr(queue_backend, "reset"):
        queue_backend.reset()
    hub.reset()
    ai_client.usage_tracker.reset()
    yield


@pytest.fixture
def client() -> AuthenticatedClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret=JWT_SECRET)
