import pytest

from sipscope.services.query_compiler import (
    CompositeCondition,
    LeafCondition,
    QueryError,
    build_smart_input,
    compile_query,
    number_alternatives,
    parse_query,
    tokenize,
)


def test_compile_and_of_two_user_fields() -> None:
    compiled = compile_query("from_user = '999%' AND to_user = '1234'")
    assert compiled == "data_header.from_user = '999%' AND data_header.to_user = '1234'"


def test_compile_or_of_two_user_fields() -> None:
    compiled = compile_query("from_user = '123' OR to_user = '123'")
    assert compiled == "data_header.from_user = '123' OR data_header.to_user = '123'"


def test_top_level_columns_are_not_prefixed_and_numbers_unquoted() -> None:
    assert compile_query("status != 200") == "status != 200"
    assert compile_query("method = 'INVITE'") == "method = 'INVITE'"
    assert compile_query("call_id = 'abc@host'") == "sid = 'abc@host'"
    assert compile_query("ua = 'Asterisk'") == "data_header.user_agent = 'Asterisk'"


def test_blank_input_compiles_to_empty_string() -> None:
    assert compile_query("") == ""
    assert compile_query("   \t ") == ""
    assert parse_query("  ") is None


def test_keywords_are_case_insensitive() -> None:
    assert compile_query("cseq = '1 INVITE' and status = 486") == "data_header.cseq = '1 INVITE' AND status = 486"


def test_same_connective_is_flattened_into_one_composite() -> None:
    condition = parse_query("from_user = '1' AND to_user = '2' AND status = 200")
    assert isinstance(condition, CompositeCondition)
    assert condition.connective == "AND"
    assert len(condition.children) == 3
    assert all(isinstance(child, LeafCondition) for child in condition.children)


def test_connective_change_starts_new_composite() -> None:
    condition = parse_query("from_user = '1' AND to_user = '2' OR status = 200")
    assert isinstance(condition, CompositeCondition)
    assert condition.connective == "OR"
    assert len(condition.children) == 2
    inner = condition.children[0]
    assert isinstance(inner, CompositeCondition)
    assert inner.connective == "AND"
    assert condition.render() == "(data_header.from_user = '1' AND data_header.to_user = '2') OR status = 200"


def test_parenthesized_group_is_preserved() -> None:
    compiled = compile_query("from_user = '999%' AND (to_user = '123' OR status != 200)")
    assert compiled == "data_header.from_user = '999%' AND (data_header.to_user = '123' OR status != 200)"


def test_nested_group_with_same_connective_renders_without_parentheses() -> None:
    assert compile_query("(from_user = '1' AND to_user = '2')") == (
        "data_header.from_user = '1' AND data_header.to_user = '2'"
    )


def test_compile_is_deterministic() -> None:
    query = "from_user = '1' OR (to_user = '2' AND status = 487)"
    assert compile_query(query) == compile_query(query)


def test_missing_value_is_reported() -> None:
    with pytest.raises(QueryError) as excinfo:
        compile_query("from_user =")
    assert "expected value" in str(excinfo.value)
    assert excinfo.value.position == len("from_user =")


def test_unknown_field_lists_available_names() -> None:
    with pytest.raises(QueryError) as excinfo:
        compile_query("caller = '1'")
    message = str(excinfo.value)
    assert 'unknown field "caller" at position 0' in message
    assert "from_user" in message and "sid" in message


@pytest.mark.parametrize(
    ("query", "fragment", "position"),
    [
        ("from_user = 'abc", "unterminated string", 12),
        ("from_user = 'a' & to_user = 'b'", "unexpected character", 16),
        ("= 'a'", "expected field name", 0),
        ("from_user 'a'", "expected operator", 10),
        ("(from_user = 'a'", "missing closing parenthesis", 16),
        ("from_user = 'a' to_user = 'b'", "unexpected token", 16),
        ("from_user = 'a' AND", "expected field name", 19),
    ],
)
def test_positional_errors(query: str, fragment: str, position: int) -> None:
    with pytest.raises(QueryError) as excinfo:
        compile_query(query)
    assert fragment in str(excinfo.value)
    assert excinfo.value.position == position


def test_query_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        compile_query("status = ")


def test_tokenize_accepts_dotted_identifiers() -> None:
    tokens = tokenize("data_header.x = 1")
    assert tokens[0].value == "data_header.x"
    assert tokens[-1].kind == "end of input"


def test_composite_requires_children() -> None:
    with pytest.raises(ValueError):
        CompositeCondition("AND", ())


def test_number_alternatives_cover_plus_prefix() -> None:
    assert number_alternatives("+4930123", ["from_user"]) == [
        "data_header.from_user = '4930123'",
        "data_header.from_user = '+4930123'",
    ]


def test_build_smart_input_takes_cartesian_product() -> None:
    criteria = [["a = '1'", "a = '2'"], ["b = '3'"], []]
    assert build_smart_input(criteria) == "a = '1' AND b = '3' OR a = '2' AND b = '3'"
    assert build_smart_input([]) == ""
    assert build_smart_input([[]]) == ""


def test_error_messages_quote_tokens_with_double_quotes() -> None:
    with pytest.raises(QueryError, match='unexpected token "to_user" at position 16'):
        compile_query("from_user = 'a' to_user = 'b'")
    with pytest.raises(QueryError, match='expected operator \\(= or !=\\) at position 10, got "a"'):
        compile_query("from_user 'a'")


def test_identifiers_accept_only_ascii_digits() -> None:
    assert tokenize("x_leg2 = 1")[0].value == "x_leg2"
    with pytest.raises(QueryError, match="unexpected character '²' at position 9"):
        tokenize("from_user² = '1'")
