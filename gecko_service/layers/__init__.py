"""
数据流分层架构
  Upstream   : 单次 HTTP GET（CoinGecko）
  Queue      : 串行请求队列，429 限流等待重试
  Cache      : L1 进程内存（memory）+ L2 Redis（cache）
  Processing : 走势数据整理与兜底数据生成
"""
