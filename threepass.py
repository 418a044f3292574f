#!/usr/bin/env python3
import os, sys, json, operator
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Tuple, Union, Callable

from ply.lex import lex
from ply.yacc import yacc

# ============================================================
# Diagnostics
# ============================================================

@dataclass
class Source:
    path: str
    text: str
    lines: List[str]

    @staticmethod
    def from_path(path: str) -> "Source":
        with open(path, "r", encoding="utf-8") as f:
            txt = f.read()
        return Source(path=os.path.abspath(path), text=txt, lines=txt.splitlines())

    @staticmethod
    def from_text(text: str, path: str = "<input>") -> "Source":
        return Source(path=path, text=text, lines=text.splitlines())

    def line_col(self, lexpos: int) -> Tuple[int, int]:
        # compute (line, col) from absolute index
        line = self.text.count("\n", 0, lexpos) + 1
        bol = self.text.rfind("\n", 0, lexpos)
        if bol < 0: bol = -1
        col = lexpos - bol
        return line, col

@dataclass
class Diag:
    kind: str  # "error" | "warning" | "note"
    msg: str
    src: Source
    lexpos: int
    hint: Optional[str] = None

    def format(self, use_color: bool = True) -> str:
        line, col = self.src.line_col(self.lexpos)
        code = self.src.lines[line - 1] if 1 <= line <= len(self.src.lines) else ""

        if use_color:
            RESET, BOLD, RED, YELLOW, BLUE, CYAN = "\033[0m", "\033[1m", "\033[31m", "\033[33m", "\033[34m", "\033[36m"
            kind_color = f"{BOLD}{RED}" if self.kind == "error" else (f"{BOLD}{YELLOW}" if self.kind == "warning" else f"{BOLD}{BLUE}")
            arrow_color = RED if self.kind == "error" else (YELLOW if self.kind == "warning" else BLUE)
        else:
            RESET = BOLD = RED = YELLOW = BLUE = CYAN = kind_color = arrow_color = ""

        header = f"{kind_color}{self.kind}{RESET}{BOLD}: {self.msg}{RESET}"
        location = f"{BOLD}{BLUE}-->{RESET} {self.src.path}:{line}:{col}"

        line_num_width = len(str(line))
        line_prefix = f"{BOLD}{BLUE}{line:>{line_num_width}} |{RESET} "
        empty_prefix = f"{BOLD}{BLUE}{' ' * line_num_width} |{RESET}"

        caret = " " * (col - 1) + f"{BOLD}{arrow_color}^{RESET}"

        result = f"{header}\n{location}\n{empty_prefix}\n{line_prefix}{code}\n{empty_prefix} {caret}"

        if self.hint:
            result += f"\n{empty_prefix}\n{empty_prefix} {BOLD}{CYAN}help:{RESET} {self.hint}"

        return result

class ErrorSink:
    def __init__(self) -> None:
        self.errors: List[Diag] = []
        self.warnings: List[Diag] = []

    def error(self, msg: str, src: Source, lexpos: int, hint: Optional[str] = None):
        self.errors.append(Diag("error", msg, src, lexpos, hint))

    def warning(self, msg: str, src: Source, lexpos: int, hint: Optional[str] = None):
        self.warnings.append(Diag("warning", msg, src, lexpos, hint))

    def ok(self) -> bool:
        return not self.errors

    def dump(self, file=None, use_color: Optional[bool] = None):
        file = file or sys.stderr
        if use_color is None:
            use_color = want_color(file)
        for d in self.errors + self.warnings:
            print(d.format(use_color), file=file)
            print(file=file)  # Empty line between diagnostics

def want_color(file) -> bool:
    if "NO_COLOR" in os.environ:
        return False
    isatty = getattr(file, "isatty", None)
    return bool(isatty and isatty())

class CompileError(Exception):
    """A fatal error from one of the passes.

    ``lexpos`` is an offset into the program text; ``src`` is attached by
    whichever entry point still knows the text, so a fold error raised on a
    bare AST can still be rendered against its source.
    """

    def __init__(self, msg: str, lexpos: Optional[int] = None, hint: Optional[str] = None,
                 src: Optional[Source] = None):
        super().__init__(msg)
        self.msg = msg
        self.lexpos = lexpos
        self.hint = hint
        self.src = src

    def with_source(self, src: Source) -> "CompileError":
        if self.src is None:
            self.src = src
        return self

    @property
    def diag(self) -> Optional[Diag]:
        if self.src is None or self.lexpos is None:
            return None
        return Diag("error", self.msg, self.src, self.lexpos, self.hint)

    def format(self, use_color: bool = True) -> str:
        d = self.diag
        if d is not None:
            return d.format(use_color)
        BOLD, RED, CYAN, RESET = ("\033[1m", "\033[31m", "\033[36m", "\033[0m") if use_color else ("", "", "", "")
        out = f"{BOLD}{RED}error:{RESET} {self.msg}"
        if self.hint:
            out += f"\n{BOLD}{CYAN}help:{RESET} {self.hint}"
        return out

class LexicalError(CompileError):
    pass

class ParseError(CompileError):
    pass

class UnknownParameterError(ParseError):
    pass

class ConstantDivisionError(CompileError, ZeroDivisionError):
    pass

# ============================================================
# Lexer
# ============================================================

tokens = (
    "NUMBER", "NAME",
    "LBRACKET", "RBRACKET", "LPAREN", "RPAREN", "COMMA",
    "PLUS", "MINUS", "TIMES", "DIVIDE", "ASSIGN",
)

t_ignore = " \t\r"

t_LBRACKET = r"\["
t_RBRACKET = r"\]"
t_LPAREN   = r"\("
t_RPAREN   = r"\)"
t_COMMA    = r","
t_PLUS     = r"\+"
t_MINUS    = r"-"
t_TIMES    = r"\*"
t_DIVIDE   = r"/"
t_ASSIGN   = r"="

def t_NUMBER(t):
    r'\d*\.?\d+'
    # kept as literal text; the parser decides what an integer is
    return t

def t_NAME(t):
    r'[A-Za-z_][A-Za-z0-9_]*'
    return t

def t_newline(t):
    r'\n+'
    t.lexer.lineno += len(t.value)

def t_error(t):
    lexer = t.lexer
    msg = f"unexpected character {t.value[0]!r}"
    if lexer._strict:
        raise LexicalError(msg, t.lexpos, "only names, integers, '[ ] ( ) , + - * /' may appear in a program",
                           lexer._source)
    if lexer._sink is not None:
        lexer._sink.warning(f"{msg} skipped", lexer._source, t.lexpos)
    t.lexer.skip(1)

@dataclass
class Token:
    type: str
    value: str
    lexpos: int = 0
    lineno: int = 1

def tokenize(source: Union[str, Source], strict: bool = True, sink: Optional[ErrorSink] = None) -> List[Token]:
    """Split a program into tokens.

    With ``strict`` an unrecognized character raises :class:`LexicalError`;
    otherwise it is dropped and reported to ``sink`` as a warning.
    """
    src = source if isinstance(source, Source) else Source.from_text(source)
    lexer = lex()
    lexer._source = src
    lexer._strict = strict
    lexer._sink = sink
    lexer.input(src.text)
    return [Token(tok.type, tok.value, tok.lexpos, tok.lineno) for tok in lexer]

# ============================================================
# AST
# ============================================================

IMM = "imm"
ARG = "arg"

@dataclass(frozen=True)
class Leaf:
    kind: str  # IMM | ARG
    value: int
    pos: int = field(default=0, compare=False)

@dataclass(frozen=True)
class BinaryOp:
    op: str  # "+" | "-" | "*" | "/"
    left: "Ast"
    right: "Ast"
    pos: int = field(default=0, compare=False)

Ast = Union[Leaf, BinaryOp]

def imm(n: int, pos: int = 0) -> Leaf:
    return Leaf(IMM, n, pos)

def arg(i: int, pos: int = 0) -> Leaf:
    return Leaf(ARG, i, pos)

def ast_to_dict(node: Ast) -> dict:
    done: List[dict] = []
    work: List[Tuple[Ast, bool]] = [(node, False)]
    while work:
        n, children_done = work.pop()
        if isinstance(n, Leaf):
            done.append({"op": n.kind, "n": n.value})
        elif isinstance(n, BinaryOp):
            if not children_done:
                work += [(n, True), (n.right, False), (n.left, False)]
                continue
            b = done.pop()
            a = done.pop()
            done.append({"op": n.op, "a": a, "b": b})
        else:
            raise TypeError(f"not an AST node: {n!r}")
    return done[0]

class ParameterTable:
    """Parameter names in declaration order, mapped to argument indices."""

    def __init__(self) -> None:
        self._index: Dict[str, int] = {}

    def declare(self, name: str, lexpos: int = 0) -> int:
        if name in self._index:
            raise ParseError(f"parameter '{name}' declared twice", lexpos,
                             "each parameter name may appear only once in the list")
        self._index[name] = len(self._index)
        return self._index[name]

    def index(self, name: str, lexpos: int = 0) -> int:
        if name not in self._index:
            declared = ", ".join(self._index) or "none"
            raise UnknownParameterError(f"unknown parameter '{name}'", lexpos,
                                        f"declared parameters: {declared}")
        return self._index[name]

    def names(self) -> List[str]:
        return list(self._index)

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, name: str) -> bool:
        return name in self._index

# ============================================================
# Parser (PLY)
# ============================================================

# Precedence - ordered from lowest to highest
precedence = (
    ('right', 'ASSIGN'),  # only so p_expression_assign can report '='
    ('left', 'PLUS', 'MINUS'),
    ('left', 'TIMES', 'DIVIDE'),
)

class TokenStream:
    """Feeds an already materialized token list to the PLY parser."""

    def __init__(self, toks: List[Token]) -> None:
        self._toks = toks
        self._i = 0

    def token(self) -> Optional[Token]:
        if self._i >= len(self._toks):
            return None
        tok = self._toks[self._i]
        self._i += 1
        return tok

# Grammar

def p_program(p):
    """program : LBRACKET params RBRACKET expression"""
    p[0] = p[4]

def p_params(p):
    """params : param_list
              | empty"""
    table = ParameterTable()
    for name, pos in p[1]:
        table.declare(name, pos)
    # expression actions resolve names against this
    p.parser._params = table
    p[0] = table

def p_param_list_multi(p):
    """param_list : param_list COMMA NAME
                  | param_list NAME"""
    p[0] = p[1] + [(p[len(p) - 1], p.lexpos(len(p) - 1))]

def p_param_list_single(p):
    """param_list : NAME"""
    p[0] = [(p[1], p.lexpos(1))]

def p_empty(p):
    """empty :"""
    p[0] = []

def p_expression_binop(p):
    """expression : expression PLUS expression
                  | expression MINUS expression
                  | expression TIMES expression
                  | expression DIVIDE expression"""
    p[0] = BinaryOp(p[2], p[1], p[3], p.lexpos(2))

def p_expression_assign(p):
    """expression : expression ASSIGN expression"""
    raise ParseError("assignment is not supported", p.lexpos(2),
                     "a program is a single expression over its parameters")

def p_expression_group(p):
    """expression : LPAREN expression RPAREN"""
    p[0] = p[2]

def p_expression_number(p):
    """expression : NUMBER"""
    text = p[1]
    if "." in text:
        raise ParseError(f"'{text}' is not an integer", p.lexpos(1),
                         "only integer literals are supported")
    p[0] = imm(int(text), p.lexpos(1))

def p_expression_name(p):
    """expression : NAME"""
    p[0] = arg(p.parser._params.index(p[1], p.lexpos(1)), p.lexpos(1))

def p_error(tok):
    if tok is None:
        raise ParseError("unexpected end of input",
                         hint="expected a program of the form '[ a, b ] expression'")
    if tok.type == "RPAREN":
        hint = "this ')' has no matching '('"
    elif tok.type == "RBRACKET":
        hint = "the parameter list is already closed"
    elif tok.type == "LBRACKET":
        hint = "only one parameter list is allowed, at the start of the program"
    elif tok.type in ("NUMBER", "NAME", "LPAREN"):
        hint = "an operator is missing between two operands"
    else:
        hint = None
    raise ParseError(f"unexpected token '{tok.value}'", tok.lexpos, hint)

def parse(toks: List[Token], source: Optional[Union[str, Source]] = None) -> Ast:
    """Build an AST from tokens.

    ``source`` is only used to render diagnostics.
    """
    src = source if isinstance(source, Source) or source is None else Source.from_text(source)
    end = len(src.text) if src is not None else (toks[-1].lexpos + len(toks[-1].value) if toks else 0)
    parser = yacc(start="program", debug=False, write_tables=False)
    parser._params = ParameterTable()
    try:
        if toks and toks[0].type != "LBRACKET":
            raise ParseError("expected '[' to open the parameter list", toks[0].lexpos,
                             "a program starts with its parameters, e.g. '[ x, y ] x + y'")
        return parser.parse(lexer=TokenStream(toks))
    except CompileError as e:
        if e.lexpos is None:
            e.lexpos = end
        if src is not None:
            e.with_source(src)
        raise

# ============================================================
# Optimizer
# ============================================================

def _truncdiv(a: int, b: int) -> int:
    # integer registers truncate toward zero; // floors
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q

FOLD_OPS: Dict[str, Callable[[int, int], int]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": _truncdiv,
}

def fold(node: Ast) -> Ast:
    """Collapse every subtree whose operands are all immediates."""
    # post-order over an explicit stack; long chains nest as deep as they are long
    done: List[Ast] = []
    work: List[Tuple[Ast, bool]] = [(node, False)]
    while work:
        n, children_done = work.pop()
        if isinstance(n, Leaf):
            done.append(n)
            continue
        if not isinstance(n, BinaryOp):
            raise TypeError(f"not an AST node: {n!r}")
        if not children_done:
            work.append((n, True))
            work.append((n.right, False))
            work.append((n.left, False))
            continue
        right = done.pop()
        left = done.pop()
        if isinstance(left, Leaf) and left.kind == IMM and isinstance(right, Leaf) and right.kind == IMM:
            if n.op == "/" and right.value == 0:
                raise ConstantDivisionError(f"division by zero in '{left.value} / 0'", n.pos,
                                            "the divisor folds to the constant 0")
            done.append(imm(FOLD_OPS[n.op](left.value, right.value), n.pos))
        else:
            done.append(BinaryOp(n.op, left, right, n.pos))
    return done[0]

# ============================================================
# Code generation
# ============================================================

IM, AR, SW, PU, PO, AD, SU, MU, DI = "IM", "AR", "SW", "PU", "PO", "AD", "SU", "MU", "DI"

MNEMONICS = (IM, AR, SW, PU, PO, AD, SU, MU, DI)

OPCODES = {"+": AD, "-": SU, "*": MU, "/": DI}

@dataclass(frozen=True)
class Instruction:
    op: str
    arg: Optional[int] = None

    def __str__(self):
        return self.op if self.arg is None else f"{self.op} {self.arg}"

    @staticmethod
    def parse(text: str) -> "Instruction":
        parts = text.split()
        if not parts or parts[0] not in MNEMONICS:
            raise ValueError(f"unknown instruction {text!r}")
        op = parts[0]
        if op in (IM, AR):
            if len(parts) != 2:
                raise ValueError(f"{op} takes exactly one operand: {text!r}")
            return Instruction(op, int(parts[1]))
        if len(parts) != 1:
            raise ValueError(f"{op} takes no operand: {text!r}")
        return Instruction(op)

def _emit(node: Ast, out: List[Instruction]):
    # each subtree leaves its value as one new item on top of the stack
    work: List[Tuple[Ast, bool]] = [(node, False)]
    while work:
        n, children_done = work.pop()
        if isinstance(n, Leaf):
            out.append(Instruction(IM if n.kind == IMM else AR, n.value))
            out.append(Instruction(PU))
        elif isinstance(n, BinaryOp):
            if not children_done:
                work.append((n, True))
                work.append((n.right, False))
                work.append((n.left, False))
                continue
            out.append(Instruction(PO))  # primary = right
            out.append(Instruction(SW))  # secondary = right
            out.append(Instruction(PO))  # primary = left
            out.append(Instruction(OPCODES[n.op]))
            out.append(Instruction(PU))
        else:
            raise TypeError(f"not an AST node: {n!r}")

def peephole(code: List[Instruction]) -> List[Instruction]:
    """Drop every PU directly consumed by the following PO."""
    out: List[Instruction] = []
    for ins in code:
        if ins.op == PO and out and out[-1].op == PU:
            out.pop()
        else:
            out.append(ins)
    return out

def generate(node: Ast, peephole_opt: bool = True) -> List[Instruction]:
    """Lower an AST to machine instructions.

    The result of the program ends up in the primary register and the stack
    is left as it was found.
    """
    code: List[Instruction] = []
    _emit(node, code)
    code.append(Instruction(PO))
    return peephole(code) if peephole_opt else code

def render(code: List[Instruction]) -> List[str]:
    return [str(ins) for ins in code]

# ============================================================
# Driver
# ============================================================

def compile_to_ast(source: Union[str, Source], strict: bool = True, sink: Optional[ErrorSink] = None) -> Ast:
    src = source if isinstance(source, Source) else Source.from_text(source)
    return parse(tokenize(src, strict=strict, sink=sink), src)

def optimize(node: Ast) -> Ast:
    return fold(node)

def generate_code(node: Ast, peephole: bool = True) -> List[Instruction]:
    return generate(node, peephole_opt=peephole)

def compile_program(source: Union[str, Source], optimize: bool = True, peephole: bool = True,
                    strict: bool = True, sink: Optional[ErrorSink] = None) -> List[str]:
    """Run the whole pipeline and render mnemonics.

    Folding is on by default, so '[ ] 1 + 1' gives 'IM 2'; pass
    ``optimize=False`` for the unfolded 'IM 1, PU, IM 1, SW, PO, AD'.
    """
    src = source if isinstance(source, Source) else Source.from_text(source)
    node = compile_to_ast(src, strict=strict, sink=sink)
    if optimize:
        try:
            node = fold(node)
        except CompileError as e:
            raise e.with_source(src)
    return render(generate(node, peephole_opt=peephole))

# the three passes under their usual names
def pass1(program: str) -> Ast:
    return compile_to_ast(program)

def pass2(node: Ast) -> Ast:
    return fold(node)

def pass3(node: Ast) -> List[str]:
    return render(generate(node))

# ============================================================
# CLI
# ============================================================

EXAMPLE = "[ x, y, z ] ( 2*3*x + 5*y - 3*z ) / (1 + 3 + 2*2)"

USAGE = "usage: threepass [-e PROGRAM | FILE] [--ast] [--no-fold] [--no-peephole] [--lenient]"

def run(src: Source, show_ast: bool, do_fold: bool, do_peephole: bool, strict: bool) -> int:
    es = ErrorSink()
    try:
        node = compile_to_ast(src, strict=strict, sink=es)
        if do_fold:
            node = fold(node)
    except CompileError as e:
        e.with_source(src)
        es.dump()
        print(e.format(use_color=want_color(sys.stderr)), file=sys.stderr)
        return 1
    es.dump()
    if show_ast:
        print(json.dumps(ast_to_dict(node), indent=2))
    else:
        for line in render(generate(node, peephole_opt=do_peephole)):
            print(line)
    return 0

def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    show_ast, do_fold, do_peephole, strict = False, True, True, True
    program: Optional[str] = None
    files: List[str] = []
    i = 0
    while i < len(args):
        a = args[i]
        if a in ("-e", "--expr"):
            if i + 1 >= len(args):
                print("error: -e/--expr requires a program", file=sys.stderr)
                return 2
            program = args[i + 1]
            i += 2
            continue
        if a in ("-h", "--help"):
            print(USAGE)
            return 0
        if a == "--ast": show_ast = True
        elif a == "--no-fold": do_fold = False
        elif a == "--no-peephole": do_peephole = False
        elif a == "--lenient": strict = False
        elif a.startswith("-") and a != "-":
            print(f"error: unknown option {a}", file=sys.stderr)
            print(USAGE, file=sys.stderr)
            return 2
        else:
            files.append(a)
        i += 1

    if program is not None and files:
        print("error: give either -e PROGRAM or a file, not both", file=sys.stderr)
        return 2
    if len(files) > 1:
        print("error: only one input file is accepted", file=sys.stderr)
        return 2

    if program is not None:
        src = Source.from_text(program, "<expr>")
    elif files == ["-"]:
        src = Source.from_text(sys.stdin.read(), "<stdin>")
    elif files:
        try:
            src = Source.from_path(files[0])
        except OSError as e:
            print(f"error: cannot read {files[0]}: {e.strerror}", file=sys.stderr)
            return 2
    else:
        print(f"No input provided. Compiling demo program: {EXAMPLE}", file=sys.stderr)
        src = Source.from_text(EXAMPLE, "<demo>")

    return run(src, show_ast, do_fold, do_peephole, strict)


if __name__ == "__main__":
    sys.exit(main())
