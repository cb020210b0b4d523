#!/usr/bin/env python3
"""
SOCKS5 会话端到端测试

在本地回环地址上启动代理和回显服务器，用真实的 TCP 连接验证：
1. 版本检查与方法选择
2. 用户名/密码认证
3. 每种终止条件对应的应答码
4. CONNECT 成功后的双向转发与半关闭
5. 连接计数器在所有连接结束后回到初始值
"""

import asyncio
import socket

import pytest

from config import CredentialStore, ServerConfig
from protocol import (
    AuthMethod, Command, DestinationRequest, Reply,
    encode_greeting, encode_credentials,
)
from proxy import ConnectionCounter, Socks5Server

TIMEOUT = 5.0
SUCCESS_REPLY = bytes([5, Reply.SUCCESS, 0, 1, 0, 0, 0, 0, 0, 0])


# ============================================================================
# 辅助函数
# ============================================================================

async def start_proxy(tokens=()):
    """启动代理，返回 (Socks5Server, asyncio.Server, 端口)"""
    server = Socks5Server(ServerConfig(host='127.0.0.1', port=0), CredentialStore(tokens))
    listener = await server.create_server()
    return server, listener, listener.sockets[0].getsockname()[1]


async def start_echo_server():
    """启动回显服务器，返回 (asyncio.Server, 端口, 已接受的连接列表)"""
    accepted = []

    async def handle(reader, writer):
        accepted.append(writer.get_extra_info('peername'))
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except (ConnectionError, OSError):
            pass
        finally:
            writer.close()

    listener = await asyncio.start_server(handle, '127.0.0.1', 0)
    return listener, listener.sockets[0].getsockname()[1], accepted


def closed_port() -> int:
    """返回一个当前没有监听者的本地端口"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


async def open_client(port):
    return await asyncio.wait_for(asyncio.open_connection('127.0.0.1', port), TIMEOUT)


async def recv(reader, n):
    return await asyncio.wait_for(reader.readexactly(n), TIMEOUT)


async def recv_all(reader):
    """读取直到 EOF"""
    return await asyncio.wait_for(reader.read(), TIMEOUT)


async def wait_idle(server, expected=0):
    """等待所有会话结束"""
    for _ in range(200):
        if server.active_connections == expected:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"active connections stuck at {server.active_connections}")


async def handshake(reader, writer, tokens_user=None):
    """完成方法选择（以及可选的认证）"""
    if tokens_user is None:
        writer.write(encode_greeting([AuthMethod.NO_AUTH]))
        assert await recv(reader, 2) == b'\x05\x00'
    else:
        writer.write(encode_greeting([AuthMethod.USERNAME_PASSWORD]))
        assert await recv(reader, 2) == b'\x05\x02'
        writer.write(encode_credentials(*tokens_user))
        assert await recv(reader, 2) == b'\x01\x00'


# ============================================================================
# 版本检查与方法选择
# ============================================================================

def test_bad_version_closes_without_reply():
    async def run():
        server, listener, port = await start_proxy()
        reader, writer = await open_client(port)
        writer.write(bytes([4, 1]))
        data = await recv_all(reader)
        writer.close()
        await wait_idle(server)
        listener.close()
        return data
    assert asyncio.run(run()) == b''


def test_no_auth_selected_when_store_empty():
    async def run():
        server, listener, port = await start_proxy()
        reader, writer = await open_client(port)
        writer.write(encode_greeting([AuthMethod.NO_AUTH, AuthMethod.USERNAME_PASSWORD]))
        data = await recv(reader, 2)
        writer.close()
        await wait_idle(server)
        listener.close()
        return data
    assert asyncio.run(run()) == b'\x05\x00'


def test_userpass_selected_when_store_not_empty():
    async def run():
        server, listener, port = await start_proxy(['alice:secret'])
        reader, writer = await open_client(port)
        writer.write(encode_greeting([AuthMethod.NO_AUTH, AuthMethod.USERNAME_PASSWORD]))
        data = await recv(reader, 2)
        writer.close()
        await wait_idle(server)
        listener.close()
        return data
    assert asyncio.run(run()) == b'\x05\x02'


@pytest.mark.parametrize('tokens, offered', [
    (['alice:secret'], [AuthMethod.NO_AUTH]),
    ([], [AuthMethod.USERNAME_PASSWORD]),
    ([], []),
])
def test_no_acceptable_method(tokens, offered):
    async def run():
        server, listener, port = await start_proxy(tokens)
        reader, writer = await open_client(port)
        writer.write(encode_greeting(offered))
        data = await recv_all(reader)
        writer.close()
        await wait_idle(server)
        listener.close()
        return data
    assert asyncio.run(run()) == b'\x05\xff'


# ============================================================================
# 认证
# ============================================================================

def test_auth_failure_closes_connection():
    async def run():
        server, listener, port = await start_proxy(['alice:secret'])
        reader, writer = await open_client(port)
        writer.write(encode_greeting([AuthMethod.USERNAME_PASSWORD]))
        assert await recv(reader, 2) == b'\x05\x02'
        writer.write(encode_credentials(b'alice', b'wrong'))
        data = await recv_all(reader)
        writer.close()
        await wait_idle(server)
        listener.close()
        return data
    assert asyncio.run(run()) == b'\x01\x01'


def test_auth_bad_version_replies_failure():
    async def run():
        server, listener, port = await start_proxy(['alice:secret'])
        reader, writer = await open_client(port)
        writer.write(encode_greeting([AuthMethod.USERNAME_PASSWORD]))
        assert await recv(reader, 2) == b'\x05\x02'
        writer.write(bytes([5]))
        data = await recv_all(reader)
        writer.close()
        await wait_idle(server)
        listener.close()
        return data
    assert asyncio.run(run()) == b'\x01\x01'


def test_auth_success_keeps_connection_open():
    async def run():
        echo, echo_port, _ = await start_echo_server()
        server, listener, port = await start_proxy(['alice:secret', 'bob:pw'])
        reader, writer = await open_client(port)
        await handshake(reader, writer, (b'alice', b'secret'))
        writer.write(DestinationRequest(Command.CONNECT, '127.0.0.1', echo_port).serialize())
        reply = await recv(reader, 10)
        writer.close()
        await wait_idle(server)
        listener.close()
        echo.close()
        return reply
    assert asyncio.run(run()) == SUCCESS_REPLY


# ============================================================================
# 请求解析与分发
# ============================================================================

def test_unsupported_address_type():
    async def run():
        server, listener, port = await start_proxy()
        reader, writer = await open_client(port)
        await handshake(reader, writer)
        writer.write(bytes([5, 1, 0, 4]))
        data = await recv_all(reader)
        writer.close()
        await wait_idle(server)
        listener.close()
        return data
    assert asyncio.run(run()) == b'\x05\x08'


@pytest.mark.parametrize('command', [Command.BIND, Command.ASSOCIATE, 0x09])
def test_non_connect_command_is_rejected_without_dial(command):
    async def run():
        echo, echo_port, accepted = await start_echo_server()
        server, listener, port = await start_proxy()
        reader, writer = await open_client(port)
        await handshake(reader, writer)
        writer.write(DestinationRequest(command, '127.0.0.1', echo_port).serialize())
        data = await recv_all(reader)
        writer.close()
        await wait_idle(server)
        listener.close()
        echo.close()
        return data, accepted
    data, accepted = asyncio.run(run())
    assert data == b'\x05\x07'
    assert accepted == []


def test_connect_failure_replies_host_unreachable():
    async def run():
        server, listener, port = await start_proxy()
        reader, writer = await open_client(port)
        await handshake(reader, writer)
        writer.write(DestinationRequest(Command.CONNECT, '127.0.0.1', closed_port()).serialize())
        data = await recv_all(reader)
        writer.close()
        await wait_idle(server)
        listener.close()
        return data
    assert asyncio.run(run()) == b'\x05\x04'


def test_truncated_request_closes_connection():
    async def run():
        server, listener, port = await start_proxy()
        reader, writer = await open_client(port)
        await handshake(reader, writer)
        writer.write(bytes([5, 1, 0, 1, 127]))
        writer.write_eof()
        data = await recv_all(reader)
        writer.close()
        await wait_idle(server)
        listener.close()
        return data
    assert asyncio.run(run()) == b''


# ============================================================================
# 转发
# ============================================================================

def test_connect_relays_echo():
    async def run():
        echo, echo_port, accepted = await start_echo_server()
        server, listener, port = await start_proxy()
        reader, writer = await open_client(port)
        await handshake(reader, writer)
        writer.write(DestinationRequest(Command.CONNECT, '127.0.0.1', echo_port).serialize())
        reply = await recv(reader, 10)

        echoed = []
        for chunk in (b'hello', b'socks5 ' * 1000, bytes(range(256))):
            writer.write(chunk)
            echoed.append(await recv(reader, len(chunk)) == chunk)

        writer.close()
        await wait_idle(server)
        listener.close()
        echo.close()
        return reply, echoed, len(accepted)
    reply, echoed, dials = asyncio.run(run())
    assert reply == SUCCESS_REPLY
    assert all(echoed)
    assert dials == 1


def test_connect_by_domain_name():
    async def run():
        echo, echo_port, _ = await start_echo_server()
        server, listener, port = await start_proxy()
        reader, writer = await open_client(port)
        await handshake(reader, writer)
        writer.write(DestinationRequest(Command.CONNECT, 'localhost', echo_port).serialize())
        reply = await recv(reader, 10)
        writer.write(b'ping')
        data = await recv(reader, 4)
        writer.close()
        await wait_idle(server)
        listener.close()
        echo.close()
        return reply, data
    assert asyncio.run(run()) == (SUCCESS_REPLY, b'ping')


def test_half_close_drains_other_direction():
    async def run():
        echo, echo_port, _ = await start_echo_server()
        server, listener, port = await start_proxy()
        reader, writer = await open_client(port)
        await handshake(reader, writer)
        writer.write(DestinationRequest(Command.CONNECT, '127.0.0.1', echo_port).serialize())
        assert await recv(reader, 10) == SUCCESS_REPLY
        writer.write(b'last words')
        writer.write_eof()
        data = await recv_all(reader)
        writer.close()
        await wait_idle(server)
        listener.close()
        echo.close()
        return data
    assert asyncio.run(run()) == b'last words'


# ============================================================================
# 连接计数
# ============================================================================

def test_counter_returns_to_zero_after_concurrent_connections():
    async def one_client(port, echo_port, payload):
        reader, writer = await open_client(port)
        await handshake(reader, writer)
        writer.write(DestinationRequest(Command.CONNECT, '127.0.0.1', echo_port).serialize())
        assert await recv(reader, 10) == SUCCESS_REPLY
        writer.write(payload)
        data = await recv(reader, len(payload))
        writer.close()
        return data

    async def run():
        echo, echo_port, _ = await start_echo_server()
        server, listener, port = await start_proxy()
        assert server.active_connections == 0
        payloads = [f"client-{i}".encode() for i in range(20)]
        results = await asyncio.gather(*(one_client(port, echo_port, p) for p in payloads))
        await wait_idle(server)
        listener.close()
        echo.close()
        return payloads, results, server.active_connections
    payloads, results, active = asyncio.run(run())
    assert results == payloads
    assert active == 0


def test_counter_never_negative():
    counter = ConnectionCounter()
    assert counter.increment() == 1
    assert counter.decrement() == 0
    assert counter.decrement() == 0
    assert counter.value == 0


if __name__ == '__main__':
    raise SystemExit(pytest.main([__file__, '-v']))
