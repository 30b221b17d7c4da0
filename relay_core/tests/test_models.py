import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from relay_core.domain.exceptions import NotFound, ValidationError
from relay_core.domain.models import Credential, ModelDescriptor, ModelList, PagedResult, Result


def _jwt(claims):
    def seg(obj):
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")

    return f"{seg({'alg': 'none'})}.{seg(claims)}.sig"


def test_credential_reads_jwt_expiry():
    exp = datetime(2030, 1, 1, tzinfo=timezone.utc)
    cred = Credential.from_token(_jwt({"exp": int(exp.timestamp())}), ttl=60)
    assert cred.expires_at == exp


def test_credential_ttl_and_skew():
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    cred = Credential.from_token("opaque-token", ttl=120, now=now)
    assert cred.expires_at == now + timedelta(seconds=120)
    assert cred.is_valid(now + timedelta(seconds=30))
    assert not cred.is_valid(now + timedelta(seconds=30), skew=100)
    assert not cred.is_valid(now + timedelta(seconds=121))


def test_credential_dict_round_trip():
    cred = Credential.from_token("opaque-token", ttl=10, source="static")
    assert Credential.from_dict(cred.to_dict()) == cred


def test_credential_rejects_empty_token():
    with pytest.raises(ValidationError):
        Credential.from_token("   ")


def test_paged_result_overflow():
    with pytest.raises(ValidationError):
        PagedResult(items=(1, 2, 3), total=3, limit=2, offset=0)
    page = PagedResult(items=(1, 2), total=5, limit=2, offset=0)
    assert page.has_more


def test_result_unwrap():
    assert Result.success(3).unwrap() == 3
    failed = Result.failure(NotFound(code="NOT_FOUND", message="x"))
    assert not failed.ok
    with pytest.raises(NotFound):
        failed.unwrap()


def test_model_list_lookup():
    models = ModelList(models=(ModelDescriptor(slug="gpt-x", max_tokens=8192, title="X"),))
    assert models.get("gpt-x").max_tokens == 8192
    assert models.get("missing") is None
    assert models.slugs == ("gpt-x",)
