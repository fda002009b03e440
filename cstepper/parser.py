"""
Recursive-descent statement parser for the cstepper interpreter.

Parses the token stream from the Lexer into the statement tree defined in
ast_nodes. Statement forms are recognised in a fixed priority order, and
anything outside the supported subset becomes an Unknown statement rather
than aborting the parse:

  1. array declaration      int a[3] = {1, 2, 3};  char s[] = "hi";
  2. scalar declaration     int x = 5;  int *p = &x;
  3. for loop               for (i = 0; i < n; i++) { ... }
  4. while loop             while (x > 0) { ... }
  5. assignment             x = e;  a[i] = e;  *p = e;  x += e;  i++;
  6. bare function call     printf("%d\\n", x);
  7. recursive return       return n * factorial(n - 1);
  8. plain return           return x;
  9. if / else              if (c) { ... } else if (d) { ... } else { ... }
 10. everything else        Unknown(raw_text)

Expressions are not parsed here: their source text is stored on the node
and tokenized at execution time by tokenize_expression().
"""

from __future__ import annotations
import enum
import functools
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from .lexer import Lexer, Token, TokenType, TYPE_KEYWORDS, unquote
from .ast_nodes import *

log = logging.getLogger(__name__)


class ParseError(Exception):
    """Raised inside the parser; statement-level callers turn it into Unknown."""

    def __init__(self, message: str, token: Token):
        super().__init__(message)
        self.message = message
        self.token = token

    def __str__(self):
        t = self.token
        return f"L{t.line}:{t.col}: {self.message} (found {t.type.name} {t.value!r})"


COMPOUND_OPS = {
    TokenType.PLUS_ASSIGN: "+",
    TokenType.MINUS_ASSIGN: "-",
    TokenType.STAR_ASSIGN: "*",
    TokenType.SLASH_ASSIGN: "/",
    TokenType.PERCENT_ASSIGN: "%",
}

_OPENERS = {TokenType.LPAREN, TokenType.LBRACKET, TokenType.LBRACE}
_CLOSERS = {TokenType.RPAREN, TokenType.RBRACKET, TokenType.RBRACE}


class Parser:
    """Recursive descent over the token list; builds the statement tree."""

    def __init__(self, tokens: List[Token], source: str = ""):
        self.tokens = tokens
        self.source = source
        self.pos = 0

    # ── Cursor ─────────────────────────────

    def _peek(self, offset: int = 0) -> Token:
        # Clamped so reads past the end keep returning EOF.
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def _cur(self) -> Token:
        return self._peek()

    def _at(self, *types: TokenType) -> bool:
        return self._peek().type in types

    def _advance(self) -> Token:
        tok = self._peek()
        self.pos = min(self.pos + 1, len(self.tokens) - 1)
        return tok

    def _match(self, *types: TokenType) -> Optional[Token]:
        return self._advance() if self._at(*types) else None

    def _expect(self, ttype: TokenType, msg: str = "") -> Token:
        tok = self._match(ttype)
        if tok is None:
            raise ParseError(msg or f"Expected {ttype.value!r}", self._peek())
        return tok

    def _slice(self, first: Token, last: Token) -> str:
        """Raw source text from the first token through the last one."""
        return self.source[first.pos:last.end].strip()

    def _collect(self, *stops: TokenType) -> str:
        """Consume tokens up to (not including) a stop token at nesting depth 0.

        Returns the raw source text of the consumed tokens. Hitting EOF or an
        unbalanced closer is a parse error.
        """
        first = self._cur()
        last: Optional[Token] = None
        depth = 0
        while True:
            tok = self._cur()
            if tok.type == TokenType.EOF:
                raise ParseError("Unexpected end of input", tok)
            if depth == 0 and tok.type in stops:
                break
            if tok.type in _OPENERS:
                depth += 1
            elif tok.type in _CLOSERS:
                if depth == 0:
                    raise ParseError("Unbalanced closing bracket", tok)
                depth -= 1
            last = self._advance()
        if last is None:
            return ""
        return self._slice(first, last)

    # ── Type parsing ──────────────────────────

    def _is_type_start(self) -> bool:
        return self._cur().type in TYPE_KEYWORDS

    def _parse_type(self) -> str:
        """Parse a base type specifier, e.g. 'int', 'unsigned char', 'long'."""
        words: List[str] = []
        while self._is_type_start():
            tok = self._advance()
            if tok.type != TokenType.KW_CONST:
                words.append(tok.value)
        if not words:
            raise ParseError("Expected type specifier", self._cur())
        if words[-1] in ("unsigned", "signed"):
            words.append("int")
        return " ".join(words)

    def _parse_stars(self) -> str:
        stars = ""
        while self._match(TokenType.STAR):
            stars += "*"
        return stars

    # ── Top-level parsing ─────────────────────

    def parse(self) -> Program:
        """Parse the full token stream into a Program."""
        prog = Program(line=1, col=1)

        while not self._at(TokenType.EOF):
            start = self.pos
            try:
                self._parse_top_level(prog)
            except ParseError as e:
                log.warning("Skipping top-level construct: %s", e)
                self.pos = start
                self._recover()
        return prog

    def _parse_top_level(self, prog: Program):
        """Parse a function definition, prototype, or global declaration."""
        if self._match(TokenType.SEMI):
            return
        if not self._is_type_start():
            raise ParseError("Expected type or declaration", self._cur())

        start = self.pos
        return_type = self._parse_type() + self._parse_stars()
        name_tok = self._expect(TokenType.IDENT, "Expected identifier")

        if not self._at(TokenType.LPAREN):
            # Global variable or array declaration
            self.pos = start
            prog.globals.extend(self._parse_declaration())
            return

        self._advance()  # (
        params = self._parse_param_list()
        self._expect(TokenType.RPAREN)

        # Prototype: int f(int n);
        if self._match(TokenType.SEMI):
            log.debug("Skipping prototype of %s", name_tok.value)
            return

        body = self._parse_block()
        prog.functions.append(Function(
            return_type=return_type,
            name=name_tok.value,
            parameters=params,
            body=body,
            line=name_tok.line,
            col=name_tok.col,
        ))

    def _parse_param_list(self) -> List[Parameter]:
        """Parse function parameter list."""
        params: List[Parameter] = []
        if self._at(TokenType.RPAREN):
            return params
        if self._at(TokenType.KW_VOID) and self._peek(1).type == TokenType.RPAREN:
            self._advance()  # skip 'void'
            return params

        while True:
            tok = self._cur()
            ptype = self._parse_type() + self._parse_stars()
            pname = ""
            if self._at(TokenType.IDENT):
                pname = self._advance().value
            # int a[] decays to int *a
            if self._match(TokenType.LBRACKET):
                self._collect(TokenType.RBRACKET)
                self._expect(TokenType.RBRACKET)
                ptype += "*"
            params.append(Parameter(type=ptype, name=pname, is_pointer=ptype.endswith("*"),
                                    line=tok.line, col=tok.col))
            if not self._match(TokenType.COMMA):
                break
        return params

    def _recover(self) -> str:
        """Skip the current malformed construct and return its raw text.

        Stops after a ';' at depth 0, after a balanced '{ ... }' group, or
        before a '}' that closes the enclosing block. Always consumes at
        least one token.
        """
        first = self._cur()
        last = first
        depth = 0
        while not self._at(TokenType.EOF):
            tok = self._cur()
            if depth == 0 and tok.type == TokenType.RBRACE and tok is not first:
                break
            last = self._advance()
            if tok.type in _OPENERS:
                depth += 1
            elif tok.type in _CLOSERS:
                depth = max(depth - 1, 0)
                if depth == 0 and tok.type == TokenType.RBRACE and not self._at(TokenType.KW_ELSE):
                    break
            elif tok.type == TokenType.SEMI and depth == 0:
                return self._slice(first, last).rstrip(";").strip()
        return self._slice(first, last)

    # ── Statements ────────────────────────────

    def _parse_block(self) -> List[ASTNode]:
        """Parse a compound statement { ... } into a statement list."""
        self._expect(TokenType.LBRACE)
        statements: List[ASTNode] = []

        while not self._at(TokenType.RBRACE, TokenType.EOF):
            statements.extend(self._parse_statement())

        self._expect(TokenType.RBRACE, "Expected '}'")
        return statements

    def _parse_body(self) -> List[ASTNode]:
        """Body of if/while/for: a braced block or a single statement."""
        if self._at(TokenType.LBRACE):
            return self._parse_block()
        return self._parse_statement()

    def _parse_statement(self) -> List[ASTNode]:
        """Parse one statement; unrecognised text becomes an Unknown node."""
        start = self.pos
        try:
            return self._parse_statement_inner()
        except ParseError as e:
            self.pos = start
            tok = self._cur()
            raw = self._recover()
            log.debug("Unrecognised statement %r (%s)", raw, e)
            return [Unknown(raw_text=raw, line=tok.line, col=tok.col)]

    def _parse_statement_inner(self) -> List[ASTNode]:
        tok = self._cur()

        # Declarations (array form is decided inside)
        if self._is_type_start():
            return self._parse_declaration()

        if self._at(TokenType.KW_FOR):
            return [self._parse_for()]

        if self._at(TokenType.KW_WHILE):
            return [self._parse_while()]

        # Nested block: its statements run inline
        if self._at(TokenType.LBRACE):
            return self._parse_block()

        # Empty statement
        if self._match(TokenType.SEMI):
            return []

        if self._match(TokenType.KW_BREAK):
            self._expect(TokenType.SEMI)
            return [Break(line=tok.line, col=tok.col)]

        if self._match(TokenType.KW_CONTINUE):
            self._expect(TokenType.SEMI)
            return [Continue(line=tok.line, col=tok.col)]

        if self._at(TokenType.KW_RETURN):
            return [self._parse_return()]

        if self._at(TokenType.KW_IF):
            return [self._parse_if()]

        return [self._parse_simple()]

    def _parse_declaration(self) -> List[ASTNode]:
        """Parse `TYPE declarator (, declarator)* ;`."""
        base = self._parse_type()
        decls: List[ASTNode] = []
        while True:
            decls.append(self._parse_declarator(base))
            if not self._match(TokenType.COMMA):
                break
        self._expect(TokenType.SEMI, "Expected ';' after declaration")
        return decls

    def _parse_declarator(self, base: str) -> ASTNode:
        stars = self._parse_stars()
        name_tok = self._expect(TokenType.IDENT, "Expected variable name")

        # Array declaration: name[SIZE?] (= INIT)?
        if self._match(TokenType.LBRACKET):
            return self._parse_array_rest(base + stars, name_tok)

        init = None
        if self._match(TokenType.ASSIGN):
            init = self._collect(TokenType.SEMI, TokenType.COMMA)
            if not init:
                raise ParseError("Expected initializer", self._cur())
        return VariableDecl(var_type=base + stars, name=name_tok.value, init_expr=init,
                            line=name_tok.line, col=name_tok.col)

    def _parse_array_rest(self, element_type: str, name_tok: Token) -> ArrayDecl:
        size_text = self._collect(TokenType.RBRACKET)
        self._expect(TokenType.RBRACKET)

        size: ArraySize = None
        if size_text:
            size = int(size_text) if size_text.isdigit() else size_text

        decl = ArrayDecl(element_type=element_type, name=name_tok.value, size=size,
                         line=name_tok.line, col=name_tok.col)

        if self._match(TokenType.ASSIGN):
            if self._at(TokenType.LBRACE):
                self._advance()
                decl.init_list = []
                while not self._at(TokenType.RBRACE):
                    item = self._collect(TokenType.COMMA, TokenType.RBRACE)
                    if item:
                        decl.init_list.append(number_or_symbol(item))
                    if not self._match(TokenType.COMMA):
                        break
                self._expect(TokenType.RBRACE, "Expected '}' after initializer list")
                if size is None:
                    decl.size = len(decl.init_list)
            elif self._at(TokenType.STRING_LITERAL) and element_type == "char":
                decl.init_string = self._advance().value
                if size is None:
                    decl.size = len(unquote(decl.init_string)) + 1
            else:
                raise ParseError("Unsupported array initializer", self._cur())
        return decl

    def _parse_for(self) -> For:
        tok = self._advance()  # 'for'
        self._expect(TokenType.LPAREN)

        # Init runs once; it ends with the first ';'
        init: List[ASTNode] = []
        if not self._match(TokenType.SEMI):
            if self._is_type_start():
                init = self._parse_declaration()
            else:
                init = [self._parse_simple()]

        cond = self._collect(TokenType.SEMI)
        self._expect(TokenType.SEMI)
        incr = self._collect(TokenType.RPAREN)
        self._expect(TokenType.RPAREN)
        body = self._parse_body()

        return For(init=init, cond=cond or "1", incr=incr, body=body,
                   line=tok.line, col=tok.col)

    def _parse_while(self) -> While:
        tok = self._advance()  # 'while'
        self._expect(TokenType.LPAREN)
        cond = self._collect(TokenType.RPAREN)
        self._expect(TokenType.RPAREN)
        if not cond:
            raise ParseError("Expected loop condition", self._cur())
        body = self._parse_body()
        return While(cond=cond, body=body, line=tok.line, col=tok.col)

    def _parse_if(self) -> If:
        tok = self._advance()  # 'if'
        self._expect(TokenType.LPAREN)
        cond = self._collect(TokenType.RPAREN)
        self._expect(TokenType.RPAREN)
        if not cond:
            raise ParseError("Expected condition", self._cur())
        then_block = self._parse_body()

        else_block = None
        if self._match(TokenType.KW_ELSE):
            else_block = self._parse_body()

        return If(cond=cond, then_block=then_block, else_block=else_block,
                  line=tok.line, col=tok.col)

    def _parse_return(self) -> Return:
        tok = self._advance()  # 'return'
        if self._match(TokenType.SEMI):
            return Return(line=tok.line, col=tok.col)

        first = self._cur()

        # return VAR * FUNC(ARGS);
        if (self._at(TokenType.IDENT)
                and self._peek(1).type == TokenType.STAR
                and self._peek(2).type == TokenType.IDENT
                and self._peek(3).type == TokenType.LPAREN):
            saved = self.pos
            variable = self._advance().value
            self._advance()  # *
            callee = self._advance().value
            args = self._parse_call_args()
            if self._at(TokenType.SEMI):
                value = self._slice(first, self._peek(-1))
                self._advance()
                return Return(value_expr=value,
                              recursive=RecursiveHint(variable=variable, callee=callee, args=args),
                              line=tok.line, col=tok.col)
            self.pos = saved

        value = self._collect(TokenType.SEMI)
        self._expect(TokenType.SEMI, "Expected ';' after return")
        return Return(value_expr=value, line=tok.line, col=tok.col)

    def _parse_call_args(self) -> List[str]:
        self._expect(TokenType.LPAREN)
        text = self._collect(TokenType.RPAREN)
        self._expect(TokenType.RPAREN)
        return split_arguments(text)

    def _parse_simple(self) -> ASTNode:
        """Assignment forms and bare calls, terminated by ';'."""
        tok = self._cur()
        stmt = self._parse_assignment_or_call()
        self._expect(TokenType.SEMI, "Expected ';'")
        stmt.line, stmt.col = tok.line, tok.col
        return stmt

    def _parse_assignment_or_call(self) -> ASTNode:
        # ++x / --x
        if self._at(TokenType.INC, TokenType.DEC):
            op = "+" if self._advance().type == TokenType.INC else "-"
            name = self._expect(TokenType.IDENT, "Expected variable after increment").value
            return Assignment(target=name, value_expr=f"{name} {op} 1")

        # *p = value
        if self._match(TokenType.STAR):
            name = self._expect(TokenType.IDENT, "Expected pointer name").value
            self._expect(TokenType.ASSIGN, "Expected '=' after dereference")
            value = self._require(self._collect(TokenType.SEMI))
            return Assignment(target=name, value_expr=value, deref=True)

        name_tok = self._expect(TokenType.IDENT, "Expected statement")
        name = name_tok.value

        # Bare call: name(args)
        if self._at(TokenType.LPAREN):
            args = self._parse_call_args()
            return FunctionCall(name=name, args=args)

        index = None
        if self._match(TokenType.LBRACKET):
            index = self._require(self._collect(TokenType.RBRACKET))
            self._expect(TokenType.RBRACKET)
        current = f"{name}[{index}]" if index is not None else name

        # x++ / x--
        if self._at(TokenType.INC, TokenType.DEC):
            op = "+" if self._advance().type == TokenType.INC else "-"
            return Assignment(target=name, index_expr=index, value_expr=f"{current} {op} 1")

        # x op= value
        if self._cur().type in COMPOUND_OPS:
            op = COMPOUND_OPS[self._advance().type]
            value = self._require(self._collect(TokenType.SEMI))
            return Assignment(target=name, index_expr=index,
                              value_expr=f"{current} {op} {_group(value)}")

        self._expect(TokenType.ASSIGN, "Expected assignment")
        value = self._require(self._collect(TokenType.SEMI))
        return Assignment(target=name, index_expr=index, value_expr=value)

    def _require(self, text: str) -> str:
        if not text:
            raise ParseError("Expected expression", self._cur())
        return text


def _group(text: str) -> str:
    """Parenthesise a compound-assignment operand unless it is a single word."""
    return text if re.fullmatch(r"[\w.]+", text) else f"({text})"


# ──────────────────────────────────────────────
# Public entry points
# ──────────────────────────────────────────────

def parse(source: str) -> Program:
    """Preprocess, tokenize and parse C source into a Program."""
    lexer = Lexer(source)
    tokens = lexer.tokenize()
    program = Parser(tokens, lexer.source).parse()
    program.includes = list(lexer.includes)
    log.debug("Parsed %d function(s), %d global(s), includes=%s",
              len(program.functions), len(program.globals), program.includes)
    return program


@functools.lru_cache(maxsize=256)
def parse_statement_text(text: str) -> Tuple[ASTNode, ...]:
    """Parse a stand-alone simple statement such as a for-loop increment."""
    source = text.strip().rstrip(";") + ";"
    lexer = Lexer(source, preprocess=False)
    parser = Parser(lexer.tokenize(), source)
    statements: List[ASTNode] = []
    while not parser._at(TokenType.EOF):
        statements.extend(parser._parse_statement())
    return tuple(statements)


def split_arguments(text: str) -> List[str]:
    """Split an argument list on top-level commas.

    Parenthesis and bracket depth is tracked so nested calls stay intact,
    and commas inside string or char literals are ignored.
    """
    if not text.strip():
        return []
    args: List[str] = []
    current: List[str] = []
    depth = 0
    quote = ""
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            current.append(ch)
            if ch == "\\" and i + 1 < len(text):
                current.append(text[i + 1])
                i += 1
            elif ch == quote:
                quote = ""
        elif ch in "\"'":
            quote = ch
            current.append(ch)
        elif ch in "([":
            depth += 1
            current.append(ch)
        elif ch in ")]":
            depth -= 1
            current.append(ch)
        elif ch == "," and depth == 0:
            args.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1
    if "".join(current).strip():
        args.append("".join(current).strip())
    return args


def number_or_symbol(text: str) -> Union[int, float, str]:
    """Initializer-list item: a numeric literal becomes a number, anything else stays text."""
    text = text.strip()
    try:
        return int(text, 0)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


# ──────────────────────────────────────────────
# Expression tokenizer
# ──────────────────────────────────────────────

class ExprTokenKind(enum.Enum):
    ARRAY_ACCESS = "array_access"
    STRING = "string"
    CHAR = "char"
    IDENT = "ident"
    NUMBER = "number"
    OPERATOR = "operator"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ExprToken:
    kind: ExprTokenKind
    value: Union[str, int, float]
    index: Optional[str] = None     # unparsed index text for ARRAY_ACCESS

    def __repr__(self):
        if self.kind == ExprTokenKind.ARRAY_ACCESS:
            return f"ExprToken({self.value}[{self.index}])"
        return f"ExprToken({self.kind.name}, {self.value!r})"


_ARRAY_HEAD_RE = re.compile(r"[A-Za-z_]\w*\s*\[")
_STRING_RE = re.compile(r'"(?:\\.|[^"\\])*"')
_CHAR_RE = re.compile(r"'(?:\\.|[^'\\])'")
_IDENT_RE = re.compile(r"[A-Za-z_]\w*")
_NUMBER_RE = re.compile(r"(0[xX][0-9a-fA-F]+|\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)[uUlLfF]*")
_OPERATOR_RE = re.compile(r"\*\*|\*|/|%|\+|-|<=|>=|==|!=|<|>|&&|\|\||\(|\)|=|,|!|&")
_UNKNOWN_RE = re.compile(r"[^\s(),;]+|\S")


def _matching_bracket(text: str, open_at: int) -> int:
    """Index of the ']' closing the '[' at open_at, or -1."""
    depth = 0
    for i in range(open_at, len(text)):
        if text[i] == "[":
            depth += 1
        elif text[i] == "]":
            depth -= 1
            if depth == 0:
                return i
    return -1


def _parse_number(text: str) -> Union[int, float]:
    text = text.rstrip("uUlLfF") if not text.lower().startswith("0x") else text
    if text.lower().startswith("0x"):
        return int(text, 16)
    if any(c in text for c in ".eE"):
        return float(text)
    return int(text)


def tokenize_expression(expr: str) -> List[ExprToken]:
    """Scan an expression left to right into typed tokens.

    Unrecognised text becomes an UNKNOWN token instead of aborting the scan,
    so the caller can report it and carry on.
    """
    tokens: List[ExprToken] = []
    pos = 0
    text = expr.strip()

    while pos < len(text):
        if text[pos].isspace():
            pos += 1
            continue

        m = _ARRAY_HEAD_RE.match(text, pos)
        if m:
            close = _matching_bracket(text, m.end() - 1)
            if close != -1:
                name = text[m.start():m.end() - 1].strip()
                tokens.append(ExprToken(ExprTokenKind.ARRAY_ACCESS, name,
                                        text[m.end():close].strip()))
                pos = close + 1
                continue

        m = _STRING_RE.match(text, pos)
        if m:
            tokens.append(ExprToken(ExprTokenKind.STRING, unquote(m.group(0))))
            pos = m.end()
            continue

        m = _CHAR_RE.match(text, pos)
        if m:
            tokens.append(ExprToken(ExprTokenKind.CHAR, ord(unquote(m.group(0)))))
            pos = m.end()
            continue

        m = _IDENT_RE.match(text, pos)
        if m:
            tokens.append(ExprToken(ExprTokenKind.IDENT, m.group(0)))
            pos = m.end()
            continue

        m = _NUMBER_RE.match(text, pos)
        if m:
            tokens.append(ExprToken(ExprTokenKind.NUMBER, _parse_number(m.group(0))))
            pos = m.end()
            continue

        m = _OPERATOR_RE.match(text, pos)
        if m:
            tokens.append(ExprToken(ExprTokenKind.OPERATOR, m.group(0)))
            pos = m.end()
            continue

        m = _UNKNOWN_RE.match(text, pos)
        log.debug("Unrecognised token %r in expression %r", m.group(0), expr)
        tokens.append(ExprToken(ExprTokenKind.UNKNOWN, m.group(0)))
        pos = m.end()

    return tokens
