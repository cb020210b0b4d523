"""
SOCKS5 代理 - 配置管理模块
加载配置文件，构建凭据存储。

版本: 1.0.0

功能概述:
本模块提供了配置管理功能，包括：
1. 服务器配置管理
2. 用户凭据管理（命令行 -a 参数和用户文件）
3. 监听地址解析
4. 配置文件的加载

配置文件格式:
- 服务器配置: config.yaml（server 和 logging 两个小节）
- 用户配置: users.yaml（users: {用户名: 密码}）
- 使用 YAML 格式，支持 Unicode
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """配置错误（重复凭据、格式错误的监听地址等）"""


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class ServerConfig:
    """
    服务器配置数据类

    Attributes:
        host: 服务器监听地址
        port: 服务器监听端口（0 表示由系统分配）
        users_file: 用户配置文件路径（可选）
    """
    host: str = "127.0.0.1"
    port: int = 1080
    users_file: Optional[str] = None


# ============================================================================
# 凭据存储
# ============================================================================

class CredentialStore:
    """
    凭据存储 - 不可变的 "username:password" 令牌集合

    在监听开始前构建，之后不再修改，处理连接时无需加锁。
    令牌按原样比较，不做任何拆分或转义，因此用户名或密码中包含冒号时
    可能与另一种拆分方式相同，这是既定行为。
    """

    def __init__(self, tokens: Iterable[str] = ()):
        self._tokens = frozenset(tokens)

    def __contains__(self, token: str) -> bool:
        return token in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)

    def __bool__(self) -> bool:
        return bool(self._tokens)

    def __repr__(self) -> str:
        return f"CredentialStore({len(self._tokens)} tokens)"

    @classmethod
    def build(cls, *sources: Iterable[str]) -> 'CredentialStore':
        """
        合并多个令牌来源构建凭据存储

        Raises:
            ConfigError: 同一个令牌出现两次
        """
        tokens = set()
        for source in sources:
            for token in source:
                if token in tokens:
                    raise ConfigError("Duplicate <username:passwd>")
                if ':' not in token:
                    logger.warning(f"凭据缺少冒号，永远不会匹配: {token!r}")
                tokens.add(token)
        return cls(tokens)


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    从 YAML 格式的配置文件中加载配置数据

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}


def load_users(users_file: str) -> List[str]:
    """
    加载用户配置

    用户文件格式为 users: {用户名: 密码}，每一项转换为令牌 "用户名:密码"。

    Args:
        users_file: 用户配置文件路径

    Returns:
        List[str]: 凭据令牌列表，如果文件不存在或格式错误则返回空列表
    """
    try:
        with open(users_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        logger.warning(f"未找到用户文件: {users_file}")
        return []
    except yaml.YAMLError as e:
        logger.warning(f"用户配置文件格式错误: {e}")
        return []

    if not data or not isinstance(data.get('users'), dict):
        return []

    return [f"{username}:{password}" for username, password in data['users'].items()]


def parse_listen_address(value: str) -> Tuple[str, int]:
    """
    解析 host:port 形式的监听地址

    IPv6 地址使用方括号: [::1]:1080

    Raises:
        ConfigError: 缺少端口或端口不合法
    """
    host, sep, port = value.rpartition(':')
    if not sep:
        raise ConfigError(f"监听地址缺少端口: {value}")
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    try:
        port_num = int(port)
    except ValueError:
        raise ConfigError(f"端口不合法: {port}") from None
    if not 0 <= port_num <= 65535:
        raise ConfigError(f"端口超出范围: {port_num}")
    return host, port_num


def server_config_from(config_data: Dict[str, Any]) -> Optional[ServerConfig]:
    """
    从配置数据的 server 小节创建服务器配置

    Returns:
        Optional[ServerConfig]: 没有 server 小节时返回 None
    """
    server_conf = config_data.get('server')
    if not server_conf:
        return None
    return ServerConfig(
        host=server_conf.get('host', '127.0.0.1'),
        port=int(server_conf.get('port', 1080)),
        users_file=server_conf.get('users_file'),
    )
