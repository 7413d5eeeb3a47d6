"""Tests for comment stripping, tokenizing and depth-aware splitting."""

import pytest

from cxxport.errors import TokenizeError
from cxxport.frontend.lexer import (
    TK_CHAR,
    TK_EOF,
    TK_IDENT,
    TK_NUMBER,
    TK_OP,
    TK_STRING,
    find_matching,
    join_tokens,
    lex,
    split_tokens,
    split_top_level,
    strip_comments,
    tokenize,
)


def values(source: str) -> list[str]:
    return [t.value for t in lex(source) if t.type != TK_EOF]


# ---------------------------------------------------------------------------
# strip_comments
# ---------------------------------------------------------------------------


def test_line_comment_blanked_and_recorded():
    text, comments = strip_comments("int x; // the x\nint y;\n")
    assert "the x" not in text
    assert text.count("\n") == 2
    assert len(comments) == 1
    assert comments[0].text == "the x"
    assert comments[0].line == 1


def test_block_comment_keeps_line_count():
    source = "/* one\n * two\n */\nint x;\n"
    text, comments = strip_comments(source)
    assert len(text) == len(source)
    assert text.count("\n") == source.count("\n")
    assert comments[0].text == "one\ntwo"
    assert comments[0].end_line == 3


def test_comment_markers_inside_strings_survive():
    text, comments = strip_comments('const char* s = "// not a comment";\n')
    assert '"// not a comment"' in text
    assert comments == []


def test_preprocessor_lines_blanked():
    text, _ = strip_comments("#include <vector>\n#define TWO \\\n  2\nint x;\n")
    assert "include" not in text
    assert "TWO" not in text
    assert "int x;" in text


def test_digit_separator_is_not_char_literal():
    text, _ = strip_comments("int big = 1'000'000;\n")
    assert "1'000'000" in text


def test_unterminated_block_comment_raises():
    with pytest.raises(TokenizeError) as exc:
        strip_comments("int x;\n/* open\n")
    assert exc.value.msg == "unterminated block comment"
    assert exc.value.line == 2


# ---------------------------------------------------------------------------
# tokenize
# ---------------------------------------------------------------------------


def test_tokenize_kinds():
    tokens = tokenize('x = 42 + "hi" + \'c\';')
    kinds = [t.type for t in tokens]
    assert kinds == [TK_IDENT, TK_OP, TK_NUMBER, TK_OP, TK_STRING, TK_OP, TK_CHAR, TK_OP, TK_EOF]


def test_keywords_are_their_own_type():
    tokens = tokenize("class Foo")
    assert tokens[0].type == "class"
    assert tokens[0].is_word()
    assert tokens[1].type == TK_IDENT


def test_type_words_stay_identifiers():
    assert tokenize("int")[0].type == TK_IDENT


def test_multi_char_operators_greedy():
    assert values("a <<= b -> c :: d") == ["a", "<<=", "b", "->", "c", "::", "d"]


def test_number_forms():
    assert values("1.5e-3 0x1F 10u .5") == ["1.5e-3", "0x1F", "10u", ".5"]


def test_prefixed_literals():
    tokens = tokenize('u8"text" L\'x\'')
    assert tokens[0].type == TK_STRING
    assert tokens[0].value == 'u8"text"'
    assert tokens[1].type == TK_CHAR


def test_raw_string_literal():
    tokens = tokenize('R"(a "quoted" b)"')
    assert tokens[0].type == TK_STRING
    assert tokens[0].value == 'R"(a "quoted" b)"'


def test_positions_track_lines_and_columns():
    tokens = tokenize("int a;\n  int b;")
    b = [t for t in tokens if t.value == "b"][0]
    assert b.line == 2
    assert b.col == 7


def test_unexpected_character_raises():
    with pytest.raises(TokenizeError):
        tokenize("int a = `b`;")


# ---------------------------------------------------------------------------
# find_matching / split_tokens
# ---------------------------------------------------------------------------


def test_find_matching_parens():
    tokens = lex("f(a, (b), c) + 1")
    assert tokens[find_matching(tokens, 1)].value == ")"
    assert find_matching(tokens, 1) == 9


def test_find_matching_angle_double_close():
    tokens = lex("std::map<int, std::vector<int>> m;")
    close = find_matching(tokens, 3)
    assert tokens[close].value == ">>"


def test_find_matching_comparison_is_not_template():
    tokens = lex("if (a < b) { x; }")
    assert find_matching(tokens, 3) == -1


def test_split_tokens_respects_nesting():
    tokens = [t for t in lex("f(a, b), std::pair<int, int>{1, 2}, c") if t.type != TK_EOF]
    parts = split_tokens(tokens)
    assert [join_tokens(p) for p in parts] == ["f(a, b)", "std::pair<int, int>{1, 2}", "c"]


def test_join_tokens_keeps_single_spaces():
    tokens = lex("const   std::string &  name")
    assert join_tokens(tokens) == "const std::string & name"


# ---------------------------------------------------------------------------
# split_top_level
# ---------------------------------------------------------------------------


def test_split_top_level_nested_template():
    assert split_top_level("std::map<int, std::vector<int>> m, int x") == [
        "std::map<int, std::vector<int>> m",
        "int x",
    ]


def test_split_top_level_string_with_comma():
    assert split_top_level('const char* s = "a,b", int n') == ['const char* s = "a,b"', "int n"]


def test_split_top_level_shift_and_arrow():
    assert split_top_level("int a = 1 << 2, Node* n = p->next") == ["int a = 1 << 2", "Node* n = p->next"]


def test_split_top_level_drops_empty_pieces():
    assert split_top_level(" , a ,, b ") == ["a", "b"]
