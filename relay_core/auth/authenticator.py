"""交互式认证能力。

核心代码只依赖 InteractiveAuthenticator 协议："没有可用凭据时，
通过某种交互式登录界面拿到一份新凭据"。具体界面（内嵌浏览器、
终端提示、tkinter 窗口）由外部协作者实现。

调试开关 debug_keep_login_visible 只影响登录界面本身：登录成功后
界面是否保持可见。它在构造时显式传入；set_debug_override() 提供
唯一的进程级覆盖，仅供测试与调试构建使用。
"""

import getpass
import sys
from typing import Callable, Optional, Protocol, TextIO

from relay_core.config.settings import settings
from relay_core.domain.exceptions import LoginCancelled
from relay_core.domain.models import Credential

_debug_override: Optional[bool] = None


def set_debug_override(value: Optional[bool]) -> None:
    """设置/清除进程级调试覆盖（None 表示恢复使用配置值）。"""

    global _debug_override
    _debug_override = value


def debug_keep_login_visible(configured: Optional[bool] = None) -> bool:
    if _debug_override is not None:
        return _debug_override
    if configured is not None:
        return configured
    return bool(getattr(settings, "debug_keep_login_visible", False))


class InteractiveAuthenticator(Protocol):
    """展示登录界面并返回提取到的凭据；用户取消时抛出 LoginCancelled。"""

    def present_login(self) -> Credential:
        ...


class StaticTokenAuthenticator:
    """使用预置令牌（例如 RELAY_ACCESS_TOKEN）的非交互实现。"""

    def __init__(self, token: Optional[str], ttl: Optional[float] = None):
        self._token = token
        self._ttl = ttl

    def present_login(self) -> Credential:
        if not self._token:
            raise LoginCancelled(code="NO_TOKEN", message="no access token configured")
        return Credential.from_token(self._token, ttl=self._ttl, source="static")


class CallbackAuthenticator:
    """把任意可调用对象包装成 InteractiveAuthenticator。

    callback 返回原始令牌字符串；返回 None 视为取消。
    """

    def __init__(self, callback: Callable[[], Optional[str]], ttl: Optional[float] = None):
        self._callback = callback
        self._ttl = ttl

    def present_login(self) -> Credential:
        token = self._callback()
        if not token:
            raise LoginCancelled(code="LOGIN_CANCELLED", message="login was cancelled")
        return Credential.from_token(token, ttl=self._ttl, source="interactive")


class ConsoleAuthenticator:
    """终端版登录界面：提示用户从浏览器复制 access token 并粘贴。"""

    def __init__(
        self,
        login_url: str,
        ttl: Optional[float] = None,
        keep_visible: Optional[bool] = None,
        prompt: Callable[[str], str] = getpass.getpass,
        out: TextIO = sys.stderr,
    ):
        self._login_url = login_url
        self._ttl = ttl
        self._keep_visible = keep_visible
        self._prompt = prompt
        self._out = out

    def present_login(self) -> Credential:
        self._out.write(f"Sign in at {self._login_url} and paste the access token below.\n")
        self._out.write("Leave empty to cancel.\n")
        self._out.flush()
        try:
            token = self._prompt("Access token: ").strip()
        except (EOFError, KeyboardInterrupt):
            raise LoginCancelled(code="LOGIN_CANCELLED", message="login was cancelled")
        if not token:
            raise LoginCancelled(code="LOGIN_CANCELLED", message="login was cancelled")
        credential = Credential.from_token(token, ttl=self._ttl, source="interactive")
        if debug_keep_login_visible(self._keep_visible):
            expires = credential.expires_at.isoformat() if credential.expires_at else "unknown"
            self._out.write(f"[debug] token accepted, expires at {expires}\n")
            self._out.flush()
        return credential
