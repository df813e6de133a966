"""
ChainXchange 行情数据服务
代理 CoinGecko 公共行情接口，为交易模拟应用提供带缓存的市场数据

架构分层：
  上游层     (Upstream)     → 单次 HTTP GET，无重试
  队列层     (Queue)        → 串行请求队列，429 限流等待重试
  缓存层     (Cache)        → L1 进程内存 + L2 Redis 两级缓存
  处理层     (Processing)   → 走势图数据整理与兜底数据生成
"""

__version__ = "1.0.0"
