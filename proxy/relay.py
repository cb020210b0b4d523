"""
数据转发模块 - 客户端与目标之间的双向字节中继

两个方向各自运行一个协程，互不影响：
- 客户端 -> 目标
- 目标 -> 客户端

某个方向的源端读到 EOF 或出错时，对该方向的目的端执行半关闭（write_eof），
另一个方向继续转发，直到它自己的源端也结束。两个方向都结束后才关闭双方连接。
复位、EOF 等都是正常的结束条件，不会作为错误向上抛出。
"""

import asyncio
import logging

logger = logging.getLogger('socks5-relay')

BUFFER_SIZE = 32768


def half_close(writer: asyncio.StreamWriter):
    """对目的端执行半关闭，让对端读到 EOF"""
    if writer.is_closing() or not writer.can_write_eof():
        return
    try:
        writer.write_eof()
    except (ConnectionError, OSError):
        pass  # 连接已断开，忽略错误


async def pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, direction: str) -> int:
    """
    单向转发数据直到源端结束

    源端读到 EOF 或出错后对目的端执行半关闭，另一个方向不受影响。

    Args:
        reader: 源端读取器
        writer: 目的端写入器
        direction: 方向描述，仅用于日志

    Returns:
        int: 转发的字节数
    """
    total = 0
    try:
        while True:
            data = await reader.read(BUFFER_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
            total += len(data)
    except (ConnectionError, OSError) as e:
        logger.debug(f"转发中断 {direction}: {e}")
    finally:
        half_close(writer)
        logger.debug(f"转发结束 {direction}: {total} 字节")
    return total


async def close_writer(writer: asyncio.StreamWriter):
    """关闭写入器，忽略连接已断开导致的错误"""
    try:
        writer.close()
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass  # 连接已断开，忽略错误


async def relay(client_reader: asyncio.StreamReader, client_writer: asyncio.StreamWriter,
                dst_reader: asyncio.StreamReader, dst_writer: asyncio.StreamWriter):
    """
    在客户端和目标之间双向转发，直到两个方向都结束

    返回前保证两个转发协程都已完成，且双方连接都已关闭。
    """
    try:
        upstream, downstream = await asyncio.gather(
            pipe(client_reader, dst_writer, "client->dst"),
            pipe(dst_reader, client_writer, "dst->client"),
        )
        logger.debug(f"中继完成: 上行 {upstream} 字节，下行 {downstream} 字节")
    finally:
        await close_writer(dst_writer)
        await close_writer(client_writer)
