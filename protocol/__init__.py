"""
SOCKS5 协议包

本包提供了 SOCKS5 代理的协议定义和实现，包括：
- 协议常量和枚举（认证方法、命令、地址类型、应答码）
- 协议异常
- 报文的解码和编码函数

使用示例：
    from protocol import read_request, encode_reply, Reply

    # 解码请求
    request = await read_request(reader)

    # 编码应答
    writer.write(encode_reply(Reply.HOST_UNREACHABLE))
"""

from .core import (
    # 协议常量
    SOCKS_VERSION,
    AUTH_VERSION,
    BOUND_ADDRESS_PAYLOAD,

    # 枚举
    AuthMethod,
    AuthStatus,
    Command,
    AddressType,
    Reply,

    # 异常
    Socks5Error,
    TruncatedMessage,
    UnsupportedVersion,
    UnsupportedAddressType,

    # 目标请求
    DestinationRequest,

    # 解码
    read_exact,
    read_greeting,
    read_credentials,
    read_request,
    make_token,

    # 编码
    encode_reply,
    encode_method_reply,
    encode_auth_reply,
    encode_greeting,
    encode_credentials,
)
