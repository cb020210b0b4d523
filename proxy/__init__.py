"""
SOCKS5 代理模块

本模块包含代理的连接处理部分：
- Socks5Session: 单个连接的握手状态机和生命周期
- relay.relay: 客户端与目标之间的双向转发
- ConnectionCounter: 活动连接计数
- Socks5Server: 监听和接受连接

使用示例：
    from proxy import Socks5Server
    server = Socks5Server(config, credentials)
    await server.start()
"""

from .counter import ConnectionCounter
from .session import Socks5Session
from .server import Socks5Server

__all__ = [
    'ConnectionCounter',
    'Socks5Session',
    'Socks5Server',
]
