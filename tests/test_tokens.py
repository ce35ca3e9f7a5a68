from sigrid.models import TokenUsage
from sigrid.tokens import accumulate_token_usage, estimate_messages_tokens, estimate_tokens, extract_token_usage


def test_estimate_is_ceil_of_quarter_length():
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abc") == 1
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_estimate_messages_counts_text_blocks_only():
    messages = [
        {"role": "system", "content": "12345678"},
        {"role": "user", "content": [{"type": "text", "text": "abcd"}, {"type": "image_url", "image_url": {"url": "x" * 400}}]},
        {"role": "assistant", "content": None},
    ]
    assert estimate_messages_tokens(messages) == 3


def test_extract_openai_usage():
    usage = extract_token_usage({"usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}})
    assert usage == TokenUsage(prompt_tokens=3, completion_tokens=4, total_tokens=7)


def test_extract_claude_usage_computes_total():
    usage = extract_token_usage({"usage": {"input_tokens": 10, "output_tokens": 5}})
    assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (10, 5, 15)


def test_extract_missing_usage_is_none():
    assert extract_token_usage({"choices": []}) is None
    assert extract_token_usage(None) is None


def test_accumulate_sums_pointwise_and_skips_missing():
    total = accumulate_token_usage([
        TokenUsage(prompt_tokens=1, completion_tokens=2, total_tokens=3),
        None,
        TokenUsage(prompt_tokens=10, completion_tokens=20, total_tokens=30),
    ])
    assert total == TokenUsage(prompt_tokens=11, completion_tokens=22, total_tokens=33)
    assert accumulate_token_usage([None]) is None
