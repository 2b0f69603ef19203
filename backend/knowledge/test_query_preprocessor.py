"""
全文检索查询预处理测试
"""
from __future__ import annotations

from knowledge.query_preprocessor import preprocess_query, select_tokens


def test_select_tokens_prefers_longer_keeps_order() -> None:
    tokens = ["人工", "人工智能", "智能", "的", "发展", "历史"]
    assert select_tokens(tokens) == ["人工", "人工智能", "智能"]


def test_select_tokens_dedupes_and_drops_noise() -> None:
    tokens = ["向量", "向量", "，", "a", "检索", "(x)"]
    assert select_tokens(tokens) == ["向量", "检索"]


def test_select_tokens_falls_back_to_single_chars() -> None:
    assert select_tokens(["猫", "，", "狗"]) == ["猫", "狗"]


def test_select_tokens_rejects_tsquery_operators() -> None:
    assert select_tokens(["foo|bar", "a&b"]) == []
    assert select_tokens(["foo|bar", "good"]) == ["good"]


def test_preprocess_query_english() -> None:
    assert preprocess_query("vector search") == "vector & search"


def test_preprocess_query_chinese() -> None:
    """中文查询: 至多 3 个词，均来自原文"""
    query = "知识库向量检索的原理"
    expression = preprocess_query(query)
    tokens = expression.split(" & ")
    assert 1 <= len(tokens) <= 3
    assert all(t in query for t in tokens)


def test_preprocess_query_without_signal() -> None:
    assert preprocess_query("！？。") == ""
    assert preprocess_query("") == ""
