"""配置 schema 与 YAML 加载。"""
