"""コンテンツ A/B テストの実験管理・統計分析エンジン"""

__version__ = "0.1.0"
