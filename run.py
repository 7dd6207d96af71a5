#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
AI 生成网关启动脚本
"""

import os
import sys
from pathlib import Path

# 添加项目根目录到Python路径
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from loguru import logger
from drama_gateway.utils.config_loader import config_loader
from drama_gateway.server.http_server import start_server_in_thread
from drama_gateway.server.init_db import init_db


def setup_logging():
    log_file = Path(config_loader.get("logging.file", "./logs/app.log"))
    if not log_file.is_absolute():
        log_file = project_root / log_file
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_file,
        rotation=config_loader.get("logging.rotation", "10 MB"),
        retention=config_loader.get("logging.retention", "7 days"),
        level=config_loader.get("logging.level", "INFO"),
        encoding="utf-8"
    )


def main():
    """主函数"""
    setup_logging()
    logger.info("启动 AI 生成网关...")

    # 创建必要的目录
    dirs = [
        project_root / "data",
        project_root / "config"
    ]
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)

    # 检查配置文件
    config_file = project_root / "config" / "config.yaml"
    if not config_file.exists() and not os.environ.get("DRAMA_GATEWAY_CONFIG"):
        logger.warning("配置文件不存在，按默认配置生成")
        config_loader.save_config(str(config_file))

    # 初始化数据库
    try:
        init_db()
    except Exception as e:
        logger.error(f"数据库初始化失败: {e}")
        sys.exit(1)

    # 启动HTTP服务
    # 优先读取环境变量 (Docker部署友好)
    overrides = config_loader.apply_env_overrides()
    if overrides:
        logger.info(f"环境变量覆盖配置: {sorted(overrides)}")
    host = config_loader.get("web.server.host", "127.0.0.1")
    port = int(config_loader.get("web.server.port", 8000))
    try:
        t = start_server_in_thread(host, port)
        # Keep main thread alive
        while t.is_alive():
            t.join(1)
    except KeyboardInterrupt:
        logger.info("正在停止服务...")


if __name__ == "__main__":
    main()
