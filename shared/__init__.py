"""跨模块共享：配置、数据模型、错误类型与工具函数。"""
