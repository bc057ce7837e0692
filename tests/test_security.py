from datetime import timedelta

from jose import jwt

from app.core.config import settings
from app.core.security import ALGORITHM, create_access_token


def test_expired_token_is_rejected(test_context, make_user):
    client, _ = test_context
    user_id, _ = make_user()
    token = create_access_token(user_id, expires_delta=timedelta(minutes=-1))

    res = client.get("/segments", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401
    assert res.json()["error"]["message"] == "Invalid token"


def test_token_for_unknown_user_is_rejected(test_context):
    client, _ = test_context
    res = client.get("/segments", headers={"Authorization": f"Bearer {create_access_token(424242)}"})
    assert res.status_code == 401
    assert res.json()["error"]["message"] == "User not found"


def test_non_access_token_is_rejected(test_context, make_user):
    client, _ = test_context
    user_id, _ = make_user()
    token = jwt.encode({"sub": str(user_id), "type": "refresh"}, settings.secret_key, algorithm=ALGORITHM)

    res = client.get("/segments", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401
    assert res.json()["error"]["message"] == "Invalid token type"


def test_audience_is_enforced_when_configured(test_context, make_user, monkeypatch):
    client, _ = test_context
    user_id, _ = make_user()
    foreign = jwt.encode({"sub": str(user_id), "aud": "billing"}, settings.secret_key, algorithm=ALGORITHM)
    monkeypatch.setattr(settings, "jwt_audience", "crm")

    assert client.get("/segments", headers={"Authorization": f"Bearer {foreign}"}).status_code == 401
    own = create_access_token(user_id)
    assert client.get("/segments", headers={"Authorization": f"Bearer {own}"}).status_code == 200


def test_error_envelope_echoes_request_id(test_context):
    client, _ = test_context
    res = client.get("/customers", headers={"X-Request-ID": "trace-123"})
    assert res.status_code == 401
    assert res.headers["X-Request-ID"] == "trace-123"
    assert res.json()["error"]["request_id"] == "trace-123"
