"""
全文检索查询预处理

jieba 全模式分词 (更易识别人名 / 词组)，保留最多 3 个有效词，以 & 连接成 to_tsquery 表达式。
"""
from __future__ import annotations

import logging
import re

import jieba

from .config import MAX_QUERY_TOKENS

logger = logging.getLogger("knowledge.query_preprocessor")

# 有效词: 至少包含一个中文 / 字母 / 数字
_SIGNAL_RE = re.compile(r"[\u4e00-\u9fa5a-zA-Z0-9]")
# 只允许词字符进入 tsquery，避免 & | ! ( ) : * 等破坏语法
_TOKEN_RE = re.compile(r"^[\w\u4e00-\u9fff]+$", re.UNICODE)


def segment(query: str) -> list[str]:
    """jieba 全模式分词，去除空白"""
    return [t.strip() for t in jieba.cut(query or "", cut_all=True) if t and t.strip()]


def _is_valid(token: str, min_length: int) -> bool:
    return len(token) >= min_length and bool(_SIGNAL_RE.search(token)) and bool(_TOKEN_RE.match(token))


def select_tokens(tokens: list[str], limit: int = MAX_QUERY_TOKENS) -> list[str]:
    """
    选出信息量最高的 limit 个词: 长词优先，同长度按出现顺序；输出保持原始顺序。

    无长度 >= 2 的词时退化为单字词。
    """
    unique = list(dict.fromkeys(tokens))
    candidates = [t for t in unique if _is_valid(t, 2)]
    if not candidates:
        candidates = [t for t in unique if _is_valid(t, 1)]
    ranked = sorted(range(len(candidates)), key=lambda i: (-len(candidates[i]), i))[:limit]
    return [candidates[i] for i in sorted(ranked)]


def preprocess_query(query: str, limit: int = MAX_QUERY_TOKENS) -> str:
    """
    查询文本 → 'a & b & c'；无有效词时返回空串 (调用方跳过全文检索)
    """
    try:
        tokens = segment(query)
    except Exception as e:
        logger.warning(f"[KB] jieba 分词失败，按空白切分: {e}")
        tokens = (query or "").split()
    selected = select_tokens(tokens, limit)
    expression = " & ".join(selected)
    logger.debug(f'[KB] 全文检索 "{query}" -> "{expression}"')
    return expression
