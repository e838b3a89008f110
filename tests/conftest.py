"""全局测试配置：确保所有测试在测试模式下运行。"""
import os
# 在任何模块导入之前设置 TESTING 环境变量，
# rentcore.main 的 lifespan 据此不输出“数据库初始化完成”日志。
os.environ["TESTING"] = "1"
