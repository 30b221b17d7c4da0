"""凭据存储。

CredentialStore 独占当前 Credential：

- get_valid_credential(): 有效则直接返回；否则触发一次交互式登录并缓存结果。
- 多个线程同时发现凭据缺失/过期时，只有一个线程展示登录界面（single-flight），
  其他线程等待同一个结果；登录取消、失败或超时时所有等待者都收到 AuthenticationFailed。
- invalidate(): 作废凭据，下次使用时重新登录。
- 凭据会持久化到磁盘，进程重启后仍可用。
"""

import threading
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Callable, Optional

from relay_core.auth.authenticator import InteractiveAuthenticator
from relay_core.config.settings import settings as default_settings
from relay_core.domain.exceptions import AuthenticationFailed, BusinessError, LoginCancelled
from relay_core.domain.models import Credential, utcnow
from relay_core.infrastructure.logging.logger import logger, mask_token
from relay_core.infrastructure.storage.credential_file import JsonCredentialFile


class CredentialStore:
    def __init__(
        self,
        authenticator: InteractiveAuthenticator,
        settings=None,
        persistence: Optional[JsonCredentialFile] = None,
        clock: Callable = utcnow,
    ):
        self._settings = settings or default_settings
        self._authenticator = authenticator
        self._clock = clock
        self._auth_timeout: Optional[float] = getattr(self._settings, "auth_timeout", None)
        self._skew: float = getattr(self._settings, "credential_refresh_skew", 0.0)
        self._lock = threading.Lock()
        self._credential: Optional[Credential] = None
        self._inflight: Optional[Future] = None
        self._login_count = 0
        if persistence is None and getattr(self._settings, "persist_credential", False):
            persistence = JsonCredentialFile(self._settings.storage_root)
        self._persistence = persistence
        if self._persistence is not None:
            stored = self._persistence.load()
            if stored is not None and stored.is_valid(self._clock(), self._skew):
                self._credential = stored
                logger.info(
                    "Loaded persisted credential",
                    extra={"extra": {"token": mask_token(stored.token)}},
                )

    @property
    def is_authenticated(self) -> bool:
        """只检查缓存凭据是否有效，不会触发登录。"""
        with self._lock:
            cred = self._credential
        return cred is not None and cred.is_valid(self._clock(), self._skew)

    @property
    def login_count(self) -> int:
        """已经展示过的登录界面次数。"""
        return self._login_count

    def get_valid_credential(self) -> Credential:
        with self._lock:
            cred = self._credential
            if cred is not None and cred.is_valid(self._clock(), self._skew):
                return cred
            leader = self._inflight is None
            if leader:
                self._inflight = Future()
            flight = self._inflight
        if leader:
            self._refresh(flight)
        # 领导线程保证 flight 一定会被完成（成功或 AuthenticationFailed）
        return flight.result()

    def set_credential(self, credential: Credential) -> None:
        """安装一份通过其他途径获得的凭据。"""
        with self._lock:
            self._credential = credential
        self._save(credential)

    def invalidate(self, credential: Optional[Credential] = None) -> bool:
        """作废凭据。

        传入 credential 时，只有当它仍是当前凭据才会作废，
        避免并发请求把刚刷新好的新凭据也丢掉。返回是否真的作废了。
        """
        with self._lock:
            current = self._credential
            if credential is not None and current is not None and current.token != credential.token:
                return False
            self._credential = None
        logger.info(
            "Credential invalidated",
            extra={"extra": {"token": mask_token(current.token if current else None)}},
        )
        if self._persistence is not None:
            try:
                self._persistence.clear()
            except BusinessError as e:
                logger.warning(f"Failed to remove persisted credential: {e.message}")
        return True

    def _refresh(self, flight: Future) -> None:
        self._login_count += 1
        logger.info("Presenting interactive login", extra={"extra": {"attempt": self._login_count}})
        try:
            credential = self._present_login()
        except AuthenticationFailed as e:
            logger.warning(f"Interactive login failed: {e.message}", extra={"extra": {"code": e.code}})
            with self._lock:
                self._inflight = None
            flight.set_exception(e)
            return
        with self._lock:
            self._credential = credential
            self._inflight = None
        logger.info(
            "Interactive login succeeded",
            extra={"extra": {"token": mask_token(credential.token), "source": credential.source}},
        )
        self._save(credential)
        flight.set_result(credential)

    def _present_login(self) -> Credential:
        """在独立线程上运行登录界面，以便对其施加超时。"""

        outcome: Future = Future()

        def run() -> None:
            try:
                outcome.set_result(self._authenticator.present_login())
            except Exception as e:
                outcome.set_exception(e)

        threading.Thread(target=run, name="relay-login", daemon=True).start()
        try:
            credential = outcome.result(timeout=self._auth_timeout)
        except FutureTimeout:
            raise AuthenticationFailed(
                code="AUTH_TIMEOUT",
                message=f"interactive login did not finish within {self._auth_timeout}s",
            )
        except LoginCancelled as e:
            raise AuthenticationFailed(code="LOGIN_CANCELLED", message=e.message)
        except AuthenticationFailed:
            raise
        except BusinessError as e:
            raise AuthenticationFailed(code="LOGIN_FAILED", message=e.message)
        except Exception as e:
            logger.exception("Authenticator raised unexpectedly")
            raise AuthenticationFailed(code="LOGIN_FAILED", message=str(e))
        if not isinstance(credential, Credential) or not credential.token:
            raise AuthenticationFailed(code="LOGIN_FAILED", message="authenticator returned no credential")
        return credential

    def _save(self, credential: Credential) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.save(credential)
        except BusinessError as e:
            logger.warning(f"Failed to persist credential: {e.message}")
