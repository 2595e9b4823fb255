import json

import httpx
import pytest

from neutronium import config, mailer
from neutronium.errors import UpstreamFailure


def use_transport(monkeypatch, handler):
    """Route the mailer's httpx client through a MockTransport."""
    real_client = httpx.Client

    def factory(*args, **kwargs):
        kwargs['transport'] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    monkeypatch.setattr(httpx, 'Client', factory)


def test_missing_api_key_fails(monkeypatch):
    monkeypatch.setattr(config, 'RESEND_API_KEY', None)
    with pytest.raises(UpstreamFailure) as exc:
        mailer.send_email('a@example.com', 'hi', '<p>hi</p>')
    assert 'RESEND_API_KEY' in exc.value.message


def test_send_magic_link_posts_to_resend(monkeypatch):
    monkeypatch.setattr(config, 'RESEND_API_KEY', 're_test')
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "email_123"})

    use_transport(monkeypatch, handler)
    link = 'http://localhost:8788/api/auth/verify?token=abc&return_url=x'
    res = mailer.send_magic_link_email('ava@example.com', link)

    assert res == {"id": "email_123"}
    req = seen[0]
    assert str(req.url) == config.RESEND_API_URL
    assert req.headers['Authorization'] == 'Bearer re_test'
    payload = json.loads(req.content)
    assert payload['to'] == ['ava@example.com']
    assert payload['from'] == config.FROM_EMAIL
    assert link in payload['text']
    # the link is escaped inside the html body
    assert 'token=abc&amp;return_url=x' in payload['html']


def test_provider_rejection_raises(monkeypatch):
    monkeypatch.setattr(config, 'RESEND_API_KEY', 're_test')
    use_transport(monkeypatch, lambda request: httpx.Response(422, json={"message": "Invalid `to` field"}))

    with pytest.raises(UpstreamFailure) as exc:
        mailer.send_email('bad', 'hi', '<p>hi</p>')
    assert 'Invalid `to` field' in exc.value.message


def test_network_error_raises(monkeypatch):
    monkeypatch.setattr(config, 'RESEND_API_KEY', 're_test')

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    use_transport(monkeypatch, handler)
    with pytest.raises(UpstreamFailure):
        mailer.send_email('a@example.com', 'hi', '<p>hi</p>')
