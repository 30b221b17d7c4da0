"""后端集成层。

该包下的模块负责：
- 定义传输层抽象接口与接口路径 (base)。
- 提供基于 httpx 的具体实现 (http_transport)。
- 后端 JSON 与领域模型之间的转换 (wire)。
"""

from typing import Optional

from relay_core.config.settings import settings
from relay_core.providers.base import Transport
from relay_core.providers.http_transport import HttpTransport


def create_transport(settings_obj: Optional[object] = None) -> Transport:
    """根据配置创建传输层实例，默认取全局 settings。"""

    return HttpTransport(settings_obj or settings)
