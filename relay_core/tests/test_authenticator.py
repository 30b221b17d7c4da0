import io

import pytest

from relay_core.auth.authenticator import (
    CallbackAuthenticator,
    ConsoleAuthenticator,
    StaticTokenAuthenticator,
    debug_keep_login_visible,
    set_debug_override,
)
from relay_core.domain.exceptions import LoginCancelled


@pytest.fixture(autouse=True)
def clear_override():
    set_debug_override(None)
    yield
    set_debug_override(None)


def test_debug_override_wins_over_configuration():
    assert debug_keep_login_visible(False) is False
    set_debug_override(True)
    assert debug_keep_login_visible(False) is True
    set_debug_override(None)
    assert debug_keep_login_visible(True) is True


def test_console_login_reads_token():
    out = io.StringIO()
    auth = ConsoleAuthenticator("https://chat.example.com", ttl=60, keep_visible=False,
                                prompt=lambda _: "  tok-console-123  ", out=out)
    cred = auth.present_login()
    assert cred.token == "tok-console-123"
    assert cred.source == "interactive"
    assert "https://chat.example.com" in out.getvalue()
    assert "[debug]" not in out.getvalue()


def test_console_login_debug_keeps_details_visible():
    out = io.StringIO()
    auth = ConsoleAuthenticator("https://chat.example.com", ttl=60, keep_visible=True,
                                prompt=lambda _: "tok-console-123", out=out)
    auth.present_login()
    assert "[debug] token accepted" in out.getvalue()


@pytest.mark.parametrize("answer", ["", "   "])
def test_console_login_empty_is_cancel(answer):
    auth = ConsoleAuthenticator("u", prompt=lambda _: answer, out=io.StringIO())
    with pytest.raises(LoginCancelled):
        auth.present_login()


def test_console_login_eof_is_cancel():
    def prompt(_):
        raise EOFError

    with pytest.raises(LoginCancelled):
        ConsoleAuthenticator("u", prompt=prompt, out=io.StringIO()).present_login()


def test_static_and_callback_authenticators():
    assert StaticTokenAuthenticator("tok-static-1").present_login().source == "static"
    with pytest.raises(LoginCancelled):
        StaticTokenAuthenticator(None).present_login()
    assert CallbackAuthenticator(lambda: "tok-cb-1").present_login().token == "tok-cb-1"
    with pytest.raises(LoginCancelled):
        CallbackAuthenticator(lambda: None).present_login()
