"""tkinter 版登录界面。

窗口展示登录地址，用户在浏览器登录后把 access token 粘贴进来。
关闭窗口或点击取消视为 LoginCancelled。调试开关打开时，登录成功后
窗口保持可见并显示令牌过期时间，直到用户手动关闭。
"""

import tkinter as tk
import webbrowser
from typing import Optional

from relay_core.auth.authenticator import debug_keep_login_visible
from relay_core.domain.exceptions import LoginCancelled
from relay_core.domain.models import Credential


class TkLoginAuthenticator:
    def __init__(self, login_url: str, ttl: Optional[float] = None, keep_visible: Optional[bool] = None):
        self._login_url = login_url
        self._ttl = ttl
        self._keep_visible = keep_visible

    def present_login(self) -> Credential:
        # 每次登录都在调用线程上创建并销毁自己的 Tk 根窗口
        root = tk.Tk()
        root.title("Relay 登录")
        result: dict = {}

        tk.Label(root, text=f"请在浏览器中登录：{self._login_url}").pack(anchor=tk.W, padx=8, pady=4)
        tk.Button(root, text="打开浏览器", command=lambda: webbrowser.open(self._login_url)).pack(anchor=tk.W, padx=8)
        tk.Label(root, text="Access token：").pack(anchor=tk.W, padx=8, pady=(8, 0))
        entry = tk.Entry(root, width=64, show="*")
        entry.pack(fill=tk.X, padx=8)
        status = tk.Label(root, text="")
        status.pack(fill=tk.X, padx=8)

        def submit(_event=None):
            token = entry.get().strip()
            if not token:
                status.config(text="令牌不能为空")
                return
            result["credential"] = Credential.from_token(token, ttl=self._ttl, source="interactive")
            if debug_keep_login_visible(self._keep_visible):
                expires = result["credential"].expires_at
                status.config(text=f"[debug] 登录成功，过期时间：{expires.isoformat() if expires else '未知'}")
                return
            root.destroy()

        btns = tk.Frame(root)
        btns.pack(fill=tk.X, padx=8, pady=8)
        tk.Button(btns, text="登录", command=submit).pack(side=tk.LEFT)
        tk.Button(btns, text="取消", command=root.destroy).pack(side=tk.LEFT)
        entry.bind("<Return>", submit)
        root.protocol("WM_DELETE_WINDOW", root.destroy)
        root.mainloop()

        credential = result.get("credential")
        if credential is None:
            raise LoginCancelled(code="LOGIN_CANCELLED", message="login window closed")
        return credential
