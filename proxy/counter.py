"""
连接计数器 - 进程级活动连接数

仅用于可观测性（日志），不参与准入控制。
"""

import logging
import threading

logger = logging.getLogger('socks5-counter')


class ConnectionCounter:
    """
    活动连接计数器

    所有修改都在锁内完成，计数永远不会小于 0。
    每次 increment() 必须恰好对应一次 decrement()。
    """

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def increment(self) -> int:
        """增加计数并返回新值"""
        with self._lock:
            self._value += 1
            return self._value

    def decrement(self) -> int:
        """减少计数并返回新值"""
        with self._lock:
            if self._value == 0:
                logger.error("连接计数器下溢，忽略本次递减")
                return 0
            self._value -= 1
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value
