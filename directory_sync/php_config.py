"""
Reader for PHP configuration files.

The directory sync plugin is traditionally configured with a PHP file that
returns a nested array literal:

    <?php
    return [
        'passbolt' => [
            'plugins' => [
                'directorySync' => [ ... ],
            ],
        ],
    ];

This module parses that literal into plain Python dicts and lists without
evaluating any PHP. Bare constants such as LDAP_OPT_REFERRALS are kept as
their names.
"""

import re
import logging
from typing import Any, Dict, List, Union

from pyparsing import (
    CaselessKeyword,
    Forward,
    Group,
    Literal,
    Optional,
    ParseBaseException,
    ParseResults,
    Regex,
    StringEnd,
    Suppress,
    ZeroOrMore,
    cpp_style_comment,
    python_style_comment,
)

from directory_sync.models import ConfigurationError

logger = logging.getLogger(__name__)


class PhpConfigError(ConfigurationError):
    """Raised when a PHP configuration file cannot be parsed."""

    def __init__(self, msg: str, lineno: int = 0, col: int = 0):
        self.msg = msg
        self.lineno = lineno
        self.col = col
        super().__init__(f"Invalid PHP configuration: {msg} (line {lineno}, column {col})")


_DOUBLE_QUOTE_ESCAPES = {
    'n': '\n',
    't': '\t',
    'r': '\r',
    'v': '\v',
    'e': '\x1b',
    'f': '\f',
    '\\': '\\',
    '$': '$',
    '"': '"',
}

_INTEGER_KEY = re.compile(r'^(0|-?[1-9][0-9]*)$')


def _single_quoted(tokens):
    # only \' and \\ are escapes; "cn=Doe\, John" keeps its backslash
    body = tokens[0][1:-1]
    return re.sub(r"\\([\\'])", r'\1', body)


def _double_quoted(tokens):
    body = tokens[0][1:-1]
    return re.sub(
        r'\\(.)',
        lambda m: _DOUBLE_QUOTE_ESCAPES.get(m.group(1), m.group(0)),
        body,
        flags=re.DOTALL,
    )


def _number(tokens):
    text = tokens[0]
    if text.lower().lstrip('-').startswith('0x'):
        return int(text, 16)
    if '.' in text or 'e' in text.lower():
        return float(text)
    return int(text)


def _build_grammar():
    value = Forward()

    single_quoted = Regex(r"'(?:[^'\\]|\\.)*'", flags=re.DOTALL).set_parse_action(_single_quoted)
    double_quoted = Regex(r'"(?:[^"\\]|\\.)*"', flags=re.DOTALL).set_parse_action(_double_quoted)
    string = single_quoted | double_quoted

    number = Regex(
        r'-?0[xX][0-9a-fA-F]+|-?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?'
    ).set_parse_action(_number)

    keyword = (
        CaselessKeyword('true').set_parse_action(lambda: [True])
        | CaselessKeyword('false').set_parse_action(lambda: [False])
        | CaselessKeyword('null').set_parse_action(lambda: [None])
    )

    constant = Regex(
        r'\\?[A-Za-z_][A-Za-z0-9_]*(?:(?:\\|::)[A-Za-z_][A-Za-z0-9_]*)*'
    ).set_parse_action(lambda t: t[0].lstrip('\\'))

    key = string | number | constant
    entry = Group(Group(Optional(key + Suppress('=>'))) + value)
    entries = Optional(entry + ZeroOrMore(Suppress(',') + entry) + Optional(Suppress(',')))

    short_array = Suppress('[') + entries + Suppress(']')
    long_array = Suppress(CaselessKeyword('array')) + Suppress('(') + entries + Suppress(')')
    array = Group(short_array | long_array)

    value <<= array | string | number | keyword | constant

    preamble = Suppress(ZeroOrMore(Regex(r'(?:declare|namespace|use)\b[^;]*;')))
    document = (
        Optional(Suppress(Literal('<?php')))
        + preamble
        + Suppress(CaselessKeyword('return'))
        + value
        + Suppress(';')
        + Optional(Suppress(Literal('?>')))
        + StringEnd()
    )
    document.ignore(cpp_style_comment)
    document.ignore(python_style_comment)
    return document


_grammar = None


def _get_grammar():
    global _grammar
    if _grammar is None:
        _grammar = _build_grammar()
    return _grammar


def _normalize_key(key: Any) -> Union[int, str]:
    """Apply PHP array key casting rules."""
    if isinstance(key, bool):
        return int(key)
    if isinstance(key, float):
        return int(key)
    if key is None:
        return ''
    if isinstance(key, str) and _INTEGER_KEY.match(key):
        return int(key)
    return key


def _to_python(node: Any) -> Any:
    if not isinstance(node, ParseResults):
        return node

    result: Dict[Union[int, str], Any] = {}
    next_index = 0
    for entry in node:
        key_part, raw_value = entry[0], entry[1]
        if len(key_part):
            key = _normalize_key(key_part[0])
        else:
            key = next_index
        if isinstance(key, int) and key >= next_index:
            next_index = key + 1
        result[key] = _to_python(raw_value)

    if list(result.keys()) == list(range(len(result))):
        return list(result.values())
    return result


def parse_php_config(text: str) -> Any:
    """
    Parse the array literal returned by a PHP configuration file.

    Args:
        text: PHP source

    Returns:
        Nested dicts and lists; arrays keyed 0..n-1 in order become lists

    Raises:
        PhpConfigError: If the text is not a `return <array>;` document
    """
    try:
        tokens = _get_grammar().parse_string(text, parse_all=True)
    except ParseBaseException as e:
        raise PhpConfigError(e.msg, e.lineno, e.col)
    return _to_python(tokens[0])


def load_php_config(path: str) -> Any:
    """Read and parse a PHP configuration file."""
    with open(path, 'r', encoding='utf-8') as f:
        text = f.read()
    logger.debug(f"Parsing PHP configuration {path}")
    return parse_php_config(text)
