"""chatsync -- 多源聊天时间线协调引擎

子包：
  core     数据模型、投递状态机、合并引擎、在线状态聚合、离线队列存储
  client   外部协作方契约、HTTP API 客户端、SSE 帧解析
  session  连接监测、实时通道适配、乐观发送、离线队列、AI 流协调
"""

__version__ = "0.1.0"
