import base64
import json

import pytest


def make_jwt(exp=None, claims=None):
    """Build an unsigned JWT-shaped token carrying ``exp``"""
    def encode(obj):
        raw = json.dumps(obj).encode()
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()

    payload = dict(claims or {})
    if exp is not None:
        payload["exp"] = exp
    return f"{encode({'alg': 'HS256', 'typ': 'JWT'})}.{encode(payload)}.signature"


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()

