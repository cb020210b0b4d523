"""
SOCKS5 服务器模块 - 服务器生命周期管理

此模块包含 Socks5Server 类，负责绑定监听地址、接受客户端连接，
并为每个连接创建独立的 Socks5Session。

使用示例:
    >>> config = ServerConfig(host='127.0.0.1', port=1080)
    >>> credentials = CredentialStore.build(['alice:secret'])
    >>> server = Socks5Server(config, credentials)
    >>> asyncio.run(server.start())
"""

import asyncio
import logging

from config import ServerConfig, CredentialStore
from proxy.counter import ConnectionCounter
from proxy.session import Socks5Session

logger = logging.getLogger('socks5-server')


class Socks5Server:
    """
    SOCKS5 服务器类 - 管理服务器生命周期和客户端连接

    每个客户端连接在独立的协程中处理，连接之间不共享锁；
    唯一共享的可变状态是活动连接计数器。

    Attributes:
        config: ServerConfig，服务器配置对象
        credentials: CredentialStore，凭据存储（启动后只读）
        counter: ConnectionCounter，活动连接计数器
    """

    def __init__(self, config: ServerConfig, credentials: CredentialStore):
        self.config = config
        self.credentials = credentials
        self.counter = ConnectionCounter()

    @property
    def active_connections(self) -> int:
        """当前活动连接数"""
        return self.counter.value

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """
        处理客户端连接

        此方法由 asyncio.start_server 为每个连接在独立协程中调用，
        会话内部的异常不会传播到这里。
        """
        session = Socks5Session(reader, writer, self.credentials, self.counter)
        await session.run()

    async def create_server(self) -> asyncio.AbstractServer:
        """绑定监听地址并返回服务器对象（端口为 0 时由系统分配）"""
        return await asyncio.start_server(
            self.handle_client,
            self.config.host,
            self.config.port
        )

    async def start(self):
        """
        启动 SOCKS5 服务器

        服务器运行在 serve_forever 循环中，直到被中断。
        """
        server = await self.create_server()
        addr = server.sockets[0].getsockname()
        logger.info(f"SOCKS5 代理监听于 {addr[0]}:{addr[1]}")
        if self.credentials:
            logger.info(f"已加载凭据数: {len(self.credentials)}，需要用户名/密码认证")
        else:
            logger.info("未配置凭据，不需要认证")

        async with server:
            await server.serve_forever()
