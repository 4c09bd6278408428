import asyncio

import pytest
from fastapi import HTTPException
from jose import jwt
from starlette.requests import Request

from rental_engine import auth
from rental_engine.config import settings


def bearer(claims, key=None):
    return "Bearer " + jwt.encode(claims, key or settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def make_request(authorization=None, host="10.0.0.5"):
    headers = [(b"authorization", authorization.encode())] if authorization else []
    return Request({"type": "http", "headers": headers, "client": (host, 5000)})


def test_user_id_from_valid_token():
    assert auth.user_id_from_authorization(bearer({"sub": "42"})) == 42


@pytest.mark.parametrize("header", [
    None,
    "",
    "Bearer",
    "Basic dXNlcjpwYXNz",
    "Bearer not-a-jwt",
])
def test_user_id_from_malformed_header(header):
    assert auth.user_id_from_authorization(header) is None


def test_user_id_rejects_foreign_signature():
    assert auth.user_id_from_authorization(bearer({"sub": "42"}, key="someone-else")) is None


@pytest.mark.parametrize("claims", [{}, {"sub": "admin"}, {"sub": "-3"}])
def test_user_id_requires_numeric_subject(claims):
    assert auth.user_id_from_authorization(bearer(claims)) is None


def test_rate_limit_key_prefers_user():
    assert asyncio.run(auth.rate_limit_key(make_request(bearer({"sub": "7"})))) == "user:7"
    assert asyncio.run(auth.rate_limit_key(make_request("Bearer junk"))) == "ip:10.0.0.5"
    assert asyncio.run(auth.rate_limit_key(make_request())) == "ip:10.0.0.5"


def test_current_user_rejects_bad_token():
    assert asyncio.run(auth.get_current_user_id(bearer({"sub": "9"}))) == 9

    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(auth.get_current_user_id("Bearer junk"))

    assert excinfo.value.status_code == 401
    assert excinfo.value.headers == {"WWW-Authenticate": "Bearer"}
