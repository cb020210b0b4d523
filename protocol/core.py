"""
SOCKS5 代理 - 核心协议模块
定义 SOCKS5 协议的常量、枚举、异常以及报文的编码和解码函数。

版本: 1.0.0

功能概述:
本模块只包含无状态的纯函数，负责从异步字节流中读取定长或变长字段，
并把应答报文编码为字节串。协议状态由会话模块驱动，本模块不保存任何状态。

报文格式（网络字节序）:
- 客户端问候:   [0x05][N][method_1..method_N]
- 方法应答:     [0x05][method]
- 认证请求:     [0x01][ulen][uname][plen][passwd]
- 认证应答:     [0x01][status]
- 客户端请求:   [0x05][cmd][0x00][atype][addr][port_hi][port_lo]
- 服务器应答:   [0x05][rep][0x00][0x01][0,0,0,0][0,0]（CONNECT 成功）
                [0x05][rep]（其他所有拒绝路径）
"""

import asyncio
import socket
import struct
import logging
from enum import IntEnum
from dataclasses import dataclass
from typing import List, Tuple

logger = logging.getLogger('socks5-protocol')


# ============================================================================
# 协议常量
# ============================================================================

SOCKS_VERSION = 0x05
AUTH_VERSION = 0x01

# CONNECT 成功应答中的绑定地址：IPv4 零地址 + 零端口
BOUND_ADDRESS_PAYLOAD = bytes([0x00, 0x01, 0, 0, 0, 0, 0, 0])


class AuthMethod(IntEnum):
    """认证方法"""
    NO_AUTH = 0x00
    USERNAME_PASSWORD = 0x02
    NO_ACCEPTABLE = 0xFF


class AuthStatus(IntEnum):
    """用户名/密码子协商的状态字节"""
    SUCCESS = 0x00
    FAILURE = 0x01


class Command(IntEnum):
    """请求命令，只有 CONNECT 会被执行"""
    CONNECT = 0x01
    BIND = 0x02
    ASSOCIATE = 0x03


class AddressType(IntEnum):
    """目标地址类型"""
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class Reply(IntEnum):
    """
    服务器应答码

    取值与 RFC 1928 第 6 节一致，顺序不可调整。
    """
    SUCCESS = 0x00
    GENERAL_FAILURE = 0x01
    RULE_DENIED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


# ============================================================================
# 异常
# ============================================================================

class Socks5Error(Exception):
    """所有协议错误的基类，只影响当前连接"""


class TruncatedMessage(Socks5Error):
    """读取到的字节数少于报文要求，连接被提前关闭"""

    def __init__(self, expected: int, received: int):
        super().__init__(f"报文被截断: 需要 {expected} 字节，实际 {received} 字节")
        self.expected = expected
        self.received = received


class UnsupportedVersion(Socks5Error):
    """协议版本字节不符合要求"""

    def __init__(self, version: int, expected: int):
        super().__init__(f"不支持的版本: {version}（期望 {expected}）")
        self.version = version
        self.expected = expected


class UnsupportedAddressType(Socks5Error):
    """请求中的地址类型无法解码"""

    def __init__(self, atype: int):
        super().__init__(f"不支持的地址类型: {atype}")
        self.atype = atype


# ============================================================================
# 目标请求
# ============================================================================

@dataclass
class DestinationRequest:
    """
    客户端请求解码后的目标

    每个连接只构造一次，用完即弃。command 保存线上的原始命令字节，
    因此未知的命令值也能被表示并得到 COMMAND_NOT_SUPPORTED 应答。

    Attributes:
        command: 命令字节（参见 Command）
        address: 点分十进制 IPv4 地址或域名
        port: 目标端口（0-65535）
    """
    command: int
    address: str
    port: int

    def serialize(self) -> bytes:
        """
        编码为客户端请求报文

        address 是合法的 IPv4 字面量时使用 IPV4 地址类型，否则按域名编码。
        """
        try:
            addr = socket.inet_aton(self.address)
            if socket.inet_ntoa(addr) != self.address:
                raise OSError(self.address)
            atype = AddressType.IPV4
        except OSError:
            name = self.address.encode('utf-8')
            addr = struct.pack('>B', len(name)) + name
            atype = AddressType.DOMAIN
        header = struct.pack('>BBBB', SOCKS_VERSION, self.command, 0x00, atype)
        return header + addr + struct.pack('>H', self.port)


# ============================================================================
# 解码
# ============================================================================

async def read_exact(reader: asyncio.StreamReader, n: int) -> bytes:
    """
    从流中读取恰好 n 个字节

    不接受部分读取：流提前结束时抛出 TruncatedMessage，调用方把它视为
    当前连接的致命错误。

    Args:
        reader: 异步流读取器
        n: 需要读取的字节数

    Returns:
        bytes: 长度恰好为 n 的数据
    """
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as e:
        raise TruncatedMessage(n, len(e.partial)) from e


async def read_greeting(reader: asyncio.StreamReader) -> bytes:
    """
    读取客户端问候并返回其提供的认证方法列表

    版本字节不是 5 时在读取任何方法字节之前抛出 UnsupportedVersion。
    """
    version, nmethods = await read_exact(reader, 2)
    if version != SOCKS_VERSION:
        raise UnsupportedVersion(version, SOCKS_VERSION)
    return await read_exact(reader, nmethods)


async def read_credentials(reader: asyncio.StreamReader) -> Tuple[bytes, bytes]:
    """
    读取用户名/密码子协商请求

    Returns:
        Tuple[bytes, bytes]: (用户名, 密码)，保持线上的原始字节

    Raises:
        UnsupportedVersion: 子协商版本不是 1，此时不会再读取后续字节
    """
    version = (await read_exact(reader, 1))[0]
    if version != AUTH_VERSION:
        raise UnsupportedVersion(version, AUTH_VERSION)

    ulen = (await read_exact(reader, 1))[0]
    username = await read_exact(reader, ulen)
    plen = (await read_exact(reader, 1))[0]
    password = await read_exact(reader, plen)
    return username, password


async def read_request(reader: asyncio.StreamReader) -> DestinationRequest:
    """
    读取客户端请求并解码目标地址

    头部中的版本字节和保留字节被忽略（版本已在问候阶段校验）。
    地址类型为 IPv6 或未知值时立即停止解码，端口字段不会被读取。

    Raises:
        UnsupportedAddressType: 地址类型不是 IPV4 或 DOMAIN
    """
    _, command, _, atype = await read_exact(reader, 4)

    if atype == AddressType.IPV4:
        address = socket.inet_ntoa(await read_exact(reader, 4))
    elif atype == AddressType.DOMAIN:
        length = (await read_exact(reader, 1))[0]
        name = await read_exact(reader, length)
        address = name.decode('utf-8', errors='replace')
    else:
        raise UnsupportedAddressType(atype)

    port = struct.unpack('>H', await read_exact(reader, 2))[0]
    return DestinationRequest(command=command, address=address, port=port)


def make_token(username: bytes, password: bytes) -> str:
    """
    由线上的用户名和密码构造凭据令牌 "username:password"

    使用 surrogateescape 解码，任意字节序列都对应唯一的令牌，合法的 UTF-8
    与命令行给出的令牌逐字相等。令牌不会再被拆分回用户名和密码。
    """
    return (username + b':' + password).decode('utf-8', errors='surrogateescape')


# ============================================================================
# 编码
# ============================================================================

def encode_reply(code: int, payload: bytes = b'') -> bytes:
    """创建服务器应答: 版本(1) + 应答码(1) + 负载"""
    return bytes([SOCKS_VERSION, code]) + payload


def encode_method_reply(method: int) -> bytes:
    """创建方法选择应答"""
    return bytes([SOCKS_VERSION, method])


def encode_auth_reply(status: int) -> bytes:
    """创建认证子协商应答"""
    return bytes([AUTH_VERSION, status])


def encode_greeting(methods: List[int]) -> bytes:
    """创建客户端问候（客户端及测试使用）"""
    return bytes([SOCKS_VERSION, len(methods)]) + bytes(methods)


def encode_credentials(username: bytes, password: bytes) -> bytes:
    """创建用户名/密码子协商请求（客户端及测试使用）"""
    return (struct.pack('>BB', AUTH_VERSION, len(username)) + username +
            struct.pack('>B', len(password)) + password)
