"""ホスト環境シグナルのアダプター"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

VisibilityListener = Callable[[bool], None]
ConnectivityListener = Callable[[bool], None]
LifecycleListener = Callable[[], None]


class PlatformAdapter(Protocol):
    """可視性・接続状態・ページ終了シグナルを提供するプロトコル。

    コアはこのアダプター経由でのみ環境シグナルを購読する。
    """

    # visibilitychange が確実に発火しないエンジンでは True
    needs_page_lifecycle_fallback: bool

    def is_online(self) -> bool: ...

    def on_visibility_change(self, listener: VisibilityListener) -> None: ...

    def on_connectivity_change(self, listener: ConnectivityListener) -> None: ...

    def on_before_unload(self, listener: LifecycleListener) -> None: ...

    def on_page_show(self, listener: LifecycleListener) -> None: ...

    def on_page_hide(self, listener: LifecycleListener) -> None: ...


class HeadlessPlatform:
    """プロセス内でシグナルを発行するアダプター。

    サーバーサイドのホストやテストで使用する。emit_* でシグナルを通知する。
    """

    def __init__(self, online: bool = True, needs_page_lifecycle_fallback: bool = False) -> None:
        self.needs_page_lifecycle_fallback = needs_page_lifecycle_fallback
        self._online = online
        self._visibility: list[VisibilityListener] = []
        self._connectivity: list[ConnectivityListener] = []
        self._before_unload: list[LifecycleListener] = []
        self._page_show: list[LifecycleListener] = []
        self._page_hide: list[LifecycleListener] = []

    def is_online(self) -> bool:
        return self._online

    def on_visibility_change(self, listener: VisibilityListener) -> None:
        self._visibility.append(listener)

    def on_connectivity_change(self, listener: ConnectivityListener) -> None:
        self._connectivity.append(listener)

    def on_before_unload(self, listener: LifecycleListener) -> None:
        self._before_unload.append(listener)

    def on_page_show(self, listener: LifecycleListener) -> None:
        self._page_show.append(listener)

    def on_page_hide(self, listener: LifecycleListener) -> None:
        self._page_hide.append(listener)

    def emit_visibility(self, visible: bool) -> None:
        for listener in list(self._visibility):
            listener(visible)

    def emit_connectivity(self, online: bool) -> None:
        self._online = online
        for listener in list(self._connectivity):
            listener(online)

    def emit_before_unload(self) -> None:
        for listener in list(self._before_unload):
            listener()

    def emit_page_show(self) -> None:
        for listener in list(self._page_show):
            listener()

    def emit_page_hide(self) -> None:
        for listener in list(self._page_hide):
            listener()
