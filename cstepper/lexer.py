"""
Tokenizer for the cstepper interpreter.

One compiled alternation pattern walks the source; the name of the group
that matched decides the token type. Literal values are decoded here
(hex/decimal/float numbers, char codes); string literals keep their raw
quoted text.

Preprocessing stays minimal: comments go, #include targets and
#define constants are recorded, every directive line turns blank so token
line numbers still point into the original file.
"""

from __future__ import annotations
import enum
import logging
import re
from dataclasses import dataclass
from typing import List, Dict

log = logging.getLogger(__name__)


class TokenType(enum.Enum):
    INT_LITERAL = "INT_LITERAL"
    FLOAT_LITERAL = "FLOAT_LITERAL"
    CHAR_LITERAL = "CHAR_LITERAL"
    STRING_LITERAL = "STRING_LITERAL"
    IDENT = "IDENT"
    UNKNOWN = "UNKNOWN"
    EOF = "EOF"

    # keywords: value is the spelling
    KW_VOID = "void"
    KW_CHAR = "char"
    KW_SHORT = "short"
    KW_INT = "int"
    KW_LONG = "long"
    KW_FLOAT = "float"
    KW_DOUBLE = "double"
    KW_UNSIGNED = "unsigned"
    KW_SIGNED = "signed"
    KW_CONST = "const"
    KW_IF = "if"
    KW_ELSE = "else"
    KW_WHILE = "while"
    KW_FOR = "for"
    KW_RETURN = "return"
    KW_BREAK = "break"
    KW_CONTINUE = "continue"

    # symbols: value is the spelling
    INC, DEC = "++", "--"
    PLUS_ASSIGN, MINUS_ASSIGN, STAR_ASSIGN = "+=", "-=", "*="
    SLASH_ASSIGN, PERCENT_ASSIGN = "/=", "%="
    EQ, NEQ, LE, GE = "==", "!=", "<=", ">="
    AND, OR = "&&", "||"
    PLUS, MINUS, STAR, SLASH, PERCENT = "+", "-", "*", "/", "%"
    AMP, PIPE, CARET, TILDE, BANG = "&", "|", "^", "~", "!"
    ASSIGN, LT, GT, DOT = "=", "<", ">", "."
    LPAREN, RPAREN = "(", ")"
    LBRACE, RBRACE = "{", "}"
    LBRACKET, RBRACKET = "[", "]"
    SEMI, COMMA, COLON, QUESTION = ";", ",", ":", "?"


# Spelling -> type, both read off the enum values above.
KEYWORDS: Dict[str, TokenType] = {t.value: t for t in TokenType if t.name.startswith("KW_")}
SYMBOLS: Dict[str, TokenType] = {t.value: t for t in TokenType if not t.value[0].isalnum()}
TYPE_KEYWORDS = frozenset(
    KEYWORDS[w] for w in "void char short int long float double unsigned signed const".split()
)


@dataclass
class Token:
    type: TokenType
    value: str | int | float
    line: int
    col: int
    pos: int = 0
    end: int = 0

    def __repr__(self):
        return f"Token({self.type.name}, {self.value!r}, L{self.line}:{self.col})"


CHAR_ESCAPES = {"n": 10, "r": 13, "t": 9, "0": 0, "\\": 92, "'": 39, '"': 34}


def _escape(m: re.Match) -> str:
    ch = m.group(1)
    return chr(CHAR_ESCAPES[ch]) if ch in CHAR_ESCAPES else ch


def unquote(text: str) -> str:
    """Drop the quotes around a string or char literal and decode its escapes."""
    if len(text) >= 2 and text[0] in "\"'" and text[-1] == text[0]:
        text = text[1:-1]
    return re.sub(r"\\(.)", _escape, text)


# ─── Comments and directives ─────────────────────

# Quoted text is matched first so "//" inside a literal is left alone.
_COMMENT_RE = re.compile(
    r'(?P<quoted>"(?:\\.|[^"\\\n])*"|\'(?:\\.|[^\'\\\n])*\')'
    r'|(?P<line>//[^\n]*)'
    r'|(?P<block>/\*[\s\S]*?(?:\*/|\Z))'
)
_DIRECTIVE_RE = re.compile(r"\s*#\s*(\w*)\s*(.*)$")
_INCLUDE_RE = re.compile(r'[<"]([^>"]+)[>"]')
_DEFINE_RE = re.compile(r"(\w+)(?:\s+(.*))?$")


def strip_comments(source: str) -> str:
    """Remove // and /* */ comments; a block comment leaves its newlines behind."""
    def _sub(m: re.Match) -> str:
        kind = m.lastgroup
        if kind == "quoted":
            return m.group()
        if kind == "line":
            return ""
        block = m.group()
        if not block.endswith("*/") or len(block) < 4:
            log.warning("Unterminated block comment; ignoring rest of source")
        return "\n" * block.count("\n")
    return _COMMENT_RE.sub(_sub, source)


class Preprocessor:
    """Handles #include and #define; every other directive becomes a blank line."""

    def __init__(self, source: str):
        self.source = source
        self.defines: Dict[str, str] = {}
        self.includes: List[str] = []

    def _directive(self, name: str, rest: str):
        if name == "include":
            target = _INCLUDE_RE.match(rest)
            if target:
                self.includes.append(target.group(1).strip())
                return
        elif name == "define":
            macro = _DEFINE_RE.match(rest)
            if macro:
                value = (macro.group(2) or "").strip()
                self.defines[macro.group(1)] = value or "1"
                return
        log.debug("Ignoring preprocessor directive: #%s %s", name, rest)

    def _expand(self, line: str) -> str:
        for name, value in self.defines.items():
            line = re.sub(rf"\b{re.escape(name)}\b", value, line)
        return line

    def process(self) -> str:
        lines = strip_comments(self.source).splitlines()
        for i, line in enumerate(lines):
            m = _DIRECTIVE_RE.match(line)
            if m:
                self._directive(m.group(1), m.group(2).strip())
                lines[i] = ""
            elif self.defines:
                lines[i] = self._expand(line)
        return "\n".join(lines)


# ─── Scanner ─────────────────────

def _alternation(words) -> str:
    return "|".join(re.escape(w) for w in sorted(words, key=len, reverse=True))


_TOKEN_RE = re.compile(
    r"(?P<space>\s+)"
    r"|(?P<number>0[xX][0-9a-fA-F]+[uUlL]*|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?[uUlLfF]*)"
    r"|(?P<char>'(?:\\.|[^'\\\n])')"
    r"|(?P<badchar>'(?:\\.|[^'\\\n])?)"
    r'|(?P<string>"(?:\\.|[^"\\\n])*")'
    r'|(?P<openstring>"(?:\\.|[^"\\\n])*)'
    r"|(?P<word>[A-Za-z_]\w*)"
    rf"|(?P<symbol>{_alternation(SYMBOLS)})"
    r"|(?P<other>.)"
)


def _number(text: str):
    if text[:2] in ("0x", "0X"):
        return TokenType.INT_LITERAL, int(text[2:].rstrip("uUlL"), 16)
    digits = text.rstrip("uUlLfF")
    suffix = text[len(digits):]
    if "f" in suffix.lower() or any(c in digits for c in ".eE"):
        return TokenType.FLOAT_LITERAL, float(digits)
    return TokenType.INT_LITERAL, int(digits)


class Lexer:
    """Splits (optionally preprocessed) source into Tokens.

    tokenize() never raises. Anything outside the subset comes back as an
    UNKNOWN token and the parser folds its statement into an Unknown node.
    """

    def __init__(self, source: str, preprocess: bool = True):
        self.defines: Dict[str, str] = {}
        self.includes: List[str] = []
        if preprocess:
            pp = Preprocessor(source)
            source = pp.process()
            self.defines, self.includes = pp.defines, pp.includes
        self.source = source
        self.tokens: List[Token] = []

    def _classify(self, kind: str, text: str, where: str):
        if kind == "number":
            return _number(text)
        if kind == "char":
            body = text[1:-1]
            if body[0] == "\\":
                return TokenType.CHAR_LITERAL, CHAR_ESCAPES.get(body[1], ord(body[1]))
            return TokenType.CHAR_LITERAL, ord(body)
        if kind == "string":
            return TokenType.STRING_LITERAL, text
        if kind == "openstring":
            log.warning("Unterminated string literal at %s", where)
            return TokenType.STRING_LITERAL, text + '"'
        if kind == "word":
            return KEYWORDS.get(text, TokenType.IDENT), text
        if kind == "symbol":
            return SYMBOLS[text], text
        if kind == "badchar" and len(text) > 1:
            log.warning("Unterminated character literal at %s", where)
        else:
            log.debug("Unexpected character %r at %s", text, where)
        return TokenType.UNKNOWN, text

    def tokenize(self) -> List[Token]:
        """Return every token in the source, terminated by EOF."""
        self.tokens = []
        line, line_start = 1, 0
        for m in _TOKEN_RE.finditer(self.source):
            text = m.group()
            if m.lastgroup == "space":
                newlines = text.count("\n")
                if newlines:
                    line += newlines
                    line_start = m.start() + text.rindex("\n") + 1
                continue
            col = m.start() - line_start + 1
            ttype, value = self._classify(m.lastgroup, text, f"L{line}:{col}")
            self.tokens.append(Token(ttype, value, line, col, m.start(), m.end()))
        end = len(self.source)
        self.tokens.append(Token(TokenType.EOF, "", line, end - line_start + 1, end, end))
        return self.tokens
