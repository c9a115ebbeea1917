"""对话树引擎：分支历史、模型分支生成与会话快照。"""

__version__ = "0.1.0"
