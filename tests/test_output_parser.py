"""Tests for the sample output format parser."""

import logging
import math

import pytest

from mini_metric_exporter import (
    NAN_OUTPUT,
    OutputParseError,
    Sample,
    parse_label_segment,
    parse_output,
)

log = logging.getLogger("tests.parser")


def test_single_value_is_unlabeled():
    assert parse_output("0.73\n", log) == (Sample(labels=None, value=0.73),)


def test_trailing_newline_is_optional():
    assert parse_output("0.73", log) == (Sample(labels=None, value=0.73),)


def test_empty_input_is_empty_output():
    output = parse_output(b"", log)
    assert output == ()
    assert output is not NAN_OUTPUT


def test_labeled_line():
    output = parse_output('sensor="cpu" 42.5\n', log)
    assert output == (Sample(labels={"sensor": "cpu"}, value=42.5),)


def test_bracketed_label_pairs():
    output = parse_output('[mount="/",device="sda1"] 0.5\n', log)
    assert output == (Sample(labels={"mount": "/", "device": "sda1"}, value=0.5),)


def test_pairs_separated_by_whitespace():
    output = parse_output('a="1" b="2" 3\n', log)
    assert output[0].labels == {"a": "1", "b": "2"}
    assert output[0].value == 3.0


def test_label_value_with_space():
    output = parse_output('name="hello world" 1\n', log)
    assert output[0].labels == {"name": "hello world"}


def test_bare_word_is_type_label():
    output = parse_output("disk 0.42\n", log)
    assert output == (Sample(labels={"type": "disk"}, value=0.42),)


def test_bare_word_in_brackets():
    assert parse_label_segment("[disk]") == {"type": "disk"}


def test_unmatched_label_syntax_is_ignored():
    # Contains "=", so it is not a bare word either
    output = parse_output("a=b 1\n", log)
    assert output == (Sample(labels={}, value=1.0),)


def test_multiple_lines_keep_order():
    text = 'type="read" 10\ntype="write" 20\n5\n'
    output = parse_output(text, log)
    assert [s.value for s in output] == [10.0, 20.0, 5.0]
    assert output[0].labels == {"type": "read"}
    assert output[2].labels is None


def test_blank_lines_are_skipped():
    output = parse_output("1\n\n   \n2\n", log)
    assert [s.value for s in output] == [1.0, 2.0]


def test_special_float_values():
    output = parse_output("NaN\n+Inf\n-Inf\n1e3\n", log)
    assert math.isnan(output[0].value)
    assert output[1].value == math.inf
    assert output[2].value == -math.inf
    assert output[3].value == 1000.0


def test_invalid_value_raises():
    with pytest.raises(OutputParseError, match="line 2"):
        parse_output("1\nnot-a-number\n3\n", log)


def test_labels_without_value_raises():
    with pytest.raises(OutputParseError):
        parse_output('sensor="cpu"\n', log)


def test_invalid_utf8_raises():
    with pytest.raises(OutputParseError, match="UTF-8"):
        parse_output(b"\xff\xfe 1\n", log)


def test_extra_fields_warn_but_parse(caplog):
    with caplog.at_level(logging.WARNING, logger="tests.parser"):
        output = parse_output("a b 7\n", log)
    assert output == (Sample(labels={"type": "a b"}, value=7.0),)
    assert "Expected 1 or 2 fields" in caplog.text


def test_rendered_value_round_trips():
    for value in (0.1, 1 / 3, 123456789.123, -2.5e-12):
        output = parse_output(f'k="v" {value!r}\n', log)
        assert output[0].value == value
