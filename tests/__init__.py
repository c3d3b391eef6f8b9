"""sc-workflow 测试套件

目录结构：
- fixtures/: 模拟数据生成函数
- unit/: 各模块的单元测试

运行：
    pytest tests/
    pytest tests/unit/ -v --tb=short
"""
