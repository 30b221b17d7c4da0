"""凭据的本地持久化，保证进程重启后无需重新登录。"""

import json
import os
from pathlib import Path
from typing import Optional
from uuid import uuid4

from relay_core.domain.exceptions import BusinessError
from relay_core.domain.models import Credential
from relay_core.infrastructure.logging.logger import logger


class JsonCredentialFile:
    """把单个 Credential 以 JSON 形式写入 <root>/credential.json。"""

    def __init__(self, root: str | Path):
        self._root = Path(root).resolve()
        self.path = self._root / "credential.json"

    def load(self) -> Optional[Credential]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return Credential.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            # 文件损坏时当作没有凭据，下次登录会覆盖它
            logger.warning(f"Ignoring unreadable credential file: {e}", extra={"extra": {"path": str(self.path)}})
            return None

    def save(self, credential: Credential) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        tmp_path = self._root / f"credential.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(credential.to_dict(), ensure_ascii=False), encoding="utf-8")
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))
