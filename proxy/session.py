"""
SOCKS5 会话模块 - 单个客户端连接的完整生命周期

此模块包含 Socks5Session 类，负责驱动一个客户端连接依次经过：
1. 版本检查（VersionCheck）
2. 方法选择（MethodSelect）
3. 用户名/密码认证（Authenticate，仅在需要时）
4. 请求解析（RequestParse）
5. 分发（Dispatch）：CONNECT 连接目标并进入双向转发，其他命令被拒绝

状态严格线性推进，不回退、不重试，任何一步失败都终止当前连接。
所有读取错误都以异常形式传播到 run()，由它统一记录日志并清理连接，
不会影响其他连接或监听进程。
"""

import asyncio
import logging
from typing import Optional

from config import CredentialStore
from logger import add_context
from protocol import (
    AuthMethod, AuthStatus, Command, Reply, BOUND_ADDRESS_PAYLOAD,
    Socks5Error, UnsupportedVersion, UnsupportedAddressType, DestinationRequest,
    read_greeting, read_credentials, read_request, make_token,
    encode_reply, encode_method_reply, encode_auth_reply,
)
from proxy.counter import ConnectionCounter
from proxy.relay import relay, close_writer

logger = logging.getLogger('socks5-session')


class Socks5Session:
    """
    处理单个客户端的 SOCKS5 会话

    Attributes:
        reader: 从客户端读取数据的异步流读取器
        writer: 向客户端写入数据的异步流写入器
        credentials: 凭据存储，为空时不需要认证
        counter: 进程级活动连接计数器
        peer_str: 客户端地址字符串，用于日志
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        credentials: CredentialStore,
        counter: ConnectionCounter
    ):
        self.reader = reader
        self.writer = writer
        self.credentials = credentials
        self.counter = counter

        peer = writer.get_extra_info('peername')
        self.peer_str = f"{peer[0]}:{peer[1]}" if peer else "unknown"

    @property
    def required_method(self) -> AuthMethod:
        """凭据存储非空时要求用户名/密码认证，否则不需要认证"""
        if self.credentials:
            return AuthMethod.USERNAME_PASSWORD
        return AuthMethod.NO_AUTH

    async def run(self):
        """主会话处理器"""
        nconns = self.counter.increment()
        add_context(peer=self.peer_str)
        logger.info(f"接受来自 {self.peer_str} 的连接，当前连接数: {nconns}")

        try:
            request = await self._negotiate()
            if request is not None:
                await self._dispatch(request)
        except UnsupportedVersion as e:
            logger.warning(f"不支持的 SOCKS 版本: {e.version}")
        except Socks5Error as e:
            logger.warning(f"协议错误: {e}")
        except (ConnectionError, OSError) as e:
            logger.debug(f"连接错误: {e}")
        except Exception:
            logger.exception(f"处理连接 {self.peer_str} 时发生意外错误")
        finally:
            await close_writer(self.writer)
            nconns = self.counter.decrement()
            logger.info(f"断开来自 {self.peer_str} 的连接，当前连接数: {nconns}")

    async def _negotiate(self) -> Optional[DestinationRequest]:
        """
        执行握手：版本检查、方法选择、认证、请求解析

        Returns:
            Optional[DestinationRequest]: 解码后的目标请求；
                已发送终止应答时返回 None
        """
        # 阶段 1: 版本检查（版本不对时 read_greeting 直接抛出，不发送任何应答）
        methods = await read_greeting(self.reader)

        # 阶段 2: 方法选择
        method = self.required_method
        if method not in methods:
            logger.info(f"客户端未提供所需的认证方法 {method.name}")
            await self._send(encode_method_reply(AuthMethod.NO_ACCEPTABLE))
            return None
        await self._send(encode_method_reply(method))

        # 阶段 3: 认证
        if method == AuthMethod.USERNAME_PASSWORD and not await self._authenticate():
            return None

        # 阶段 4: 请求解析
        try:
            return await read_request(self.reader)
        except UnsupportedAddressType as e:
            logger.warning(f"不支持的地址类型: {e.atype}")
            await self._send(encode_reply(Reply.ADDRESS_TYPE_NOT_SUPPORTED))
            return None

    async def _authenticate(self) -> bool:
        """
        用户名/密码子协商

        Returns:
            bool: 认证成功返回 True；失败时已发送失败应答
        """
        try:
            username, password = await read_credentials(self.reader)
        except UnsupportedVersion as e:
            logger.warning(f"不支持的认证子协商版本: {e.version}")
            await self._send(encode_auth_reply(AuthStatus.FAILURE))
            return False

        if make_token(username, password) in self.credentials:
            add_context(user=username.decode('utf-8', errors='replace'))
            await self._send(encode_auth_reply(AuthStatus.SUCCESS))
            return True

        logger.warning(f"来自 {self.peer_str} 的认证失败")
        await self._send(encode_auth_reply(AuthStatus.FAILURE))
        return False

    async def _dispatch(self, request: DestinationRequest):
        """按命令分发请求，只有 CONNECT 会建立出站连接"""
        if request.command != Command.CONNECT:
            logger.info(f"不支持的命令: {request.command}")
            await self._send(encode_reply(Reply.COMMAND_NOT_SUPPORTED))
            return

        logger.info(f"CONNECT {request.address}:{request.port}")
        try:
            dst_reader, dst_writer = await asyncio.open_connection(request.address, request.port)
        except (OSError, ValueError) as e:
            logger.warning(f"连接目标 {request.address}:{request.port} 失败: {e}")
            await self._send(encode_reply(Reply.HOST_UNREACHABLE))
            return

        try:
            await self._send(encode_reply(Reply.SUCCESS, BOUND_ADDRESS_PAYLOAD))
        except BaseException:
            await close_writer(dst_writer)
            raise

        await relay(self.reader, self.writer, dst_reader, dst_writer)

    async def _send(self, data: bytes):
        """发送一条完整的应答报文"""
        self.writer.write(data)
        await self.writer.drain()
