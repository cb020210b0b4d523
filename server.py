#!/usr/bin/env python3
"""
SOCKS5 代理服务端

版本: 1.0.0

协议:
1. 方法协商（无认证或用户名/密码）
2. 可选的用户名/密码认证
3. CONNECT 请求，连接目标后双向转发

用法:
    socks5-proxy -l <host:port> [ -a <username:passwd> ]...
"""

import argparse
import asyncio
import logging

from config import (
    ConfigError, CredentialStore, ServerConfig,
    load_config, load_users, parse_listen_address, server_config_from,
)
from logger import LoggerManager
from proxy import Socks5Server

logger = logging.getLogger('socks5-proxy')


class CredentialAction(argparse.Action):
    """收集可重复的 -a 参数，拒绝重复的凭据"""

    def __call__(self, parser, namespace, value, option_string=None):
        tokens = getattr(namespace, self.dest) or []
        if value in tokens:
            parser.error(f"argument {option_string}: Duplicate <username:passwd>")
        setattr(namespace, self.dest, tokens + [value])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='SOCKS5 代理服务端',
        usage='%(prog)s -l <host:port> [ -a <username:passwd> ]...'
    )
    parser.add_argument('-l', dest='listen', default=None, help='监听地址: <host:port>')
    parser.add_argument('-a', dest='auth', action=CredentialAction, default=[],
                        help='添加认证凭据 <username:passwd>（可重复）')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--users', '-u', default=None, help='用户文件（默认：从配置读取）')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    return parser


def main(argv=None):
    """主函数"""
    parser = build_parser()
    args = parser.parse_args(argv)

    # 加载配置文件
    config_data = load_config(args.config)

    manager = LoggerManager()
    manager.initialize(log_section=config_data.get('logging') or {})
    if args.debug:
        manager.set_level('DEBUG')

    # 确定监听地址（命令行优先）
    config = server_config_from(config_data)
    if args.listen:
        try:
            host, port = parse_listen_address(args.listen)
        except ConfigError as e:
            parser.error(str(e))
        config = ServerConfig(host=host, port=port,
                              users_file=config.users_file if config else None)
    if config is None:
        parser.print_usage()
        return 2

    # 构建凭据存储（命令行 -a 与用户文件合并）
    users_file = args.users or config.users_file
    try:
        credentials = CredentialStore.build(
            args.auth,
            load_users(users_file) if users_file else [],
        )
    except ConfigError as e:
        logger.error(str(e))
        return 1

    server = Socks5Server(config, credentials)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("服务端已停止")
    except OSError as e:
        logger.error(f"无法监听 {config.host}:{config.port}: {e}")
        return 1

    return 0


if __name__ == '__main__':
    exit(main())
