"""
STT Edge Gateway Package

目录结构:
- api/      : HTTP / WebSocket 路由层
- services/ : 业务服务层（编排、供应商路由、供应商客户端、实时会话）
- billing/  : 计费层（试用设备余额、许可证缓存、计费后端）
- transform/: 文本处理层
- core/     : 成本模型与价格格式化
"""
# 子模块按需导入，不在此处预加载
