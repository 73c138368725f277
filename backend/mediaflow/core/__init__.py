"""Core module exports

MediaFlow 项目的核心功能模块，提供领域模型与纯逻辑能力。

主要模块：
- models: SQLModel 数据模型定义
- schemas: 事件负载、通知与 API 的 Pydantic 模型
- state_machine: 媒体状态转换表
- steps: 可插拔的处理步骤
- errors: 流水线异常层级
"""
