"""数据库建表脚本 (schema_knowledge.sql) 与执行入口 run_schema"""
