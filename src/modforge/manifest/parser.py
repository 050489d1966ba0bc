# manifest/parser.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

# ---------------------------------------------------------------------
# A small recursive-descent reader for PowerShell data files (.psd1).
#
# Only the literal forms a module manifest uses are understood:
#   @{ key = value ... }     hashtables (nested at any depth)
#   @( a, b ... )            array sub-expressions
#   'a', 'b'                 bare comma lists
#   'single' "double" @'here'@ @"here"@
#   $true $false $null, numbers
# Anything else is kept as an opaque RawNode so it survives edits untouched.
#
# Every node carries [start, end) offsets into the source text. Editing is
# done by splicing text at those offsets, never by re-serializing.
# ---------------------------------------------------------------------


class ManifestSyntaxError(ValueError):
    def __init__(self, message: str, offset: int):
        super().__init__(f"{message} (at offset {offset})")
        self.offset = offset


@dataclass
class Node:
    start: int
    end: int


@dataclass
class StringNode(Node):
    value: str


@dataclass
class BoolNode(Node):
    value: bool


@dataclass
class NullNode(Node):
    pass


@dataclass
class NumberNode(Node):
    text: str


@dataclass
class RawNode(Node):
    text: str


@dataclass
class ArrayNode(Node):
    items: List[Node] = field(default_factory=list)
    # True for @( ... ), False for a bare "a, b" list
    subexpression: bool = True


@dataclass
class Entry:
    key: str
    key_start: int
    value: Node

    @property
    def start(self) -> int:
        return self.key_start

    @property
    def end(self) -> int:
        return self.value.end


@dataclass
class HashtableNode(Node):
    entries: List[Entry] = field(default_factory=list)

    def get(self, key: str) -> Optional[Entry]:
        """Case-insensitive lookup; the first matching entry wins."""
        wanted = key.lower()
        for entry in self.entries:
            if entry.key.lower() == wanted:
                return entry
        return None


_DELIMITERS = set(" \t\r\n;,}){")
_BARE_KEY_EXTRA = set("_-.")


class _Reader:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.n = len(text)

    # ----- low level -----

    def peek(self, offset: int = 0) -> str:
        i = self.pos + offset
        return self.text[i] if i < self.n else ""

    def startswith(self, s: str) -> bool:
        return self.text.startswith(s, self.pos)

    def error(self, message: str) -> ManifestSyntaxError:
        return ManifestSyntaxError(message, self.pos)

    def skip_trivia(self, newlines: bool = True) -> None:
        """Skip whitespace and comments. Newlines only when allowed."""
        while self.pos < self.n:
            ch = self.text[self.pos]
            if ch in " \t\ufeff":
                self.pos += 1
            elif ch in "\r\n":
                if not newlines:
                    return
                self.pos += 1
            elif ch == "`" and self.peek(1) in ("\r", "\n"):
                # line continuation
                self.pos += 1
                if self.startswith("\r\n"):
                    self.pos += 2
                else:
                    self.pos += 1
            elif self.startswith("<#"):
                close = self.text.find("#>", self.pos + 2)
                if close < 0:
                    raise self.error("unterminated block comment")
                self.pos = close + 2
            elif ch == "#":
                while self.pos < self.n and self.text[self.pos] not in "\r\n":
                    self.pos += 1
            else:
                return

    # ----- document -----

    def document(self) -> HashtableNode:
        self.skip_trivia()
        if not self.startswith("@{"):
            raise self.error("manifest must start with a hashtable literal '@{'")
        table = self.hashtable()
        self.skip_trivia()
        if self.pos != self.n:
            raise self.error("unexpected content after top-level hashtable")
        return table

    def hashtable(self) -> HashtableNode:
        start = self.pos
        self.pos += 2  # '@{'
        entries: List[Entry] = []
        while True:
            self.skip_trivia()
            while self.peek() == ";":
                self.pos += 1
                self.skip_trivia()
            if self.pos >= self.n:
                raise self.error("unterminated hashtable")
            if self.peek() == "}":
                self.pos += 1
                return HashtableNode(start=start, end=self.pos, entries=entries)

            key_start = self.pos
            key = self.key()
            self.skip_trivia(newlines=False)
            if self.peek() != "=":
                raise self.error(f"expected '=' after key '{key}'")
            self.pos += 1
            self.skip_trivia()
            value = self.expression()
            entries.append(Entry(key=key, key_start=key_start, value=value))

            self.skip_trivia(newlines=False)
            ch = self.peek()
            if ch not in ("\r", "\n", ";", "}"):
                raise self.error(f"expected end of entry after '{key}'")

    def key(self) -> str:
        ch = self.peek()
        if ch == "'":
            return self.single_quoted().value
        if ch == '"':
            return self.double_quoted().value
        begin = self.pos
        while self.pos < self.n and (self.text[self.pos].isalnum() or self.text[self.pos] in _BARE_KEY_EXTRA):
            self.pos += 1
        if self.pos == begin:
            raise self.error("expected hashtable key")
        return self.text[begin:self.pos]

    # ----- values -----

    def expression(self) -> Node:
        """A primary value, or a bare comma list of primaries."""
        first = self.primary()
        self.skip_trivia(newlines=False)
        if self.peek() != ",":
            return first
        items = [first]
        while self.peek() == ",":
            self.pos += 1
            self.skip_trivia()
            items.append(self.primary())
            self.skip_trivia(newlines=False)
        return ArrayNode(start=first.start, end=items[-1].end, items=items, subexpression=False)

    def primary(self) -> Node:
        ch = self.peek()
        if ch == "":
            raise self.error("unexpected end of document")
        if ch == "'":
            return self.single_quoted()
        if ch == '"':
            return self.double_quoted()
        if self.startswith("@{"):
            return self.hashtable()
        if self.startswith("@("):
            return self.array()
        if self.startswith("@'") or self.startswith('@"'):
            return self.here_string()
        if ch == "$":
            return self.variable()
        if ch.isdigit() or (ch in "+-." and self.peek(1).isdigit()):
            return self.number()
        if ch == "(":
            return self.parenthesized()
        return self.raw()

    def single_quoted(self) -> StringNode:
        start = self.pos
        self.pos += 1
        out: List[str] = []
        while True:
            if self.pos >= self.n:
                raise ManifestSyntaxError("unterminated string", start)
            ch = self.text[self.pos]
            if ch == "'":
                if self.peek(1) == "'":
                    out.append("'")
                    self.pos += 2
                    continue
                self.pos += 1
                return StringNode(start=start, end=self.pos, value="".join(out))
            out.append(ch)
            self.pos += 1

    def double_quoted(self) -> StringNode:
        start = self.pos
        self.pos += 1
        out: List[str] = []
        escapes = {"n": "\n", "r": "\r", "t": "\t", "0": "\0", "`": "`", '"': '"', "$": "$", "'": "'"}
        while True:
            if self.pos >= self.n:
                raise ManifestSyntaxError("unterminated string", start)
            ch = self.text[self.pos]
            if ch == "`" and self.pos + 1 < self.n:
                nxt = self.text[self.pos + 1]
                out.append(escapes.get(nxt, nxt))
                self.pos += 2
                continue
            if ch == '"':
                if self.peek(1) == '"':
                    out.append('"')
                    self.pos += 2
                    continue
                self.pos += 1
                return StringNode(start=start, end=self.pos, value="".join(out))
            out.append(ch)
            self.pos += 1

    def here_string(self) -> StringNode:
        start = self.pos
        quote = self.text[self.pos + 1]
        self.pos += 2
        # header must be followed by a newline
        self.skip_trivia(newlines=False)
        if self.startswith("\r\n"):
            self.pos += 2
        elif self.peek() == "\n":
            self.pos += 1
        else:
            raise self.error("here-string header must end the line")
        body_start = self.pos
        terminator = "\n" + quote + "@"
        close = self.text.find(terminator, body_start - 1)
        if close < 0:
            raise ManifestSyntaxError("unterminated here-string", start)
        body = self.text[body_start:close]
        if body.endswith("\r"):
            body = body[:-1]
        self.pos = close + len(terminator)
        return StringNode(start=start, end=self.pos, value=body)

    def variable(self) -> Node:
        start = self.pos
        self.pos += 1
        while self.pos < self.n and (self.text[self.pos].isalnum() or self.text[self.pos] in "_:"):
            self.pos += 1
        name = self.text[start + 1:self.pos].lower()
        if name == "true":
            return BoolNode(start=start, end=self.pos, value=True)
        if name == "false":
            return BoolNode(start=start, end=self.pos, value=False)
        if name == "null":
            return NullNode(start=start, end=self.pos)
        return RawNode(start=start, end=self.pos, text=self.text[start:self.pos])

    def number(self) -> NumberNode:
        start = self.pos
        self.pos += 1
        while self.pos < self.n and self.text[self.pos] not in _DELIMITERS:
            self.pos += 1
        return NumberNode(start=start, end=self.pos, text=self.text[start:self.pos])

    def array(self) -> ArrayNode:
        start = self.pos
        self.pos += 2  # '@('
        items: List[Node] = []
        while True:
            self.skip_trivia()
            while self.peek() in (";", ","):
                self.pos += 1
                self.skip_trivia()
            if self.pos >= self.n:
                raise ManifestSyntaxError("unterminated array", start)
            if self.peek() == ")":
                self.pos += 1
                return ArrayNode(start=start, end=self.pos, items=items, subexpression=True)
            items.append(self.expression())

    def parenthesized(self) -> RawNode:
        # Kept opaque; only balanced parentheses are required.
        start = self.pos
        depth = 0
        while self.pos < self.n:
            ch = self.text[self.pos]
            if ch == "'":
                self.single_quoted()
                continue
            if ch == '"':
                self.double_quoted()
                continue
            self.pos += 1
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    return RawNode(start=start, end=self.pos, text=self.text[start:self.pos])
        raise ManifestSyntaxError("unterminated parenthesized expression", start)

    def raw(self) -> RawNode:
        start = self.pos
        bracket = 0
        while self.pos < self.n:
            ch = self.text[self.pos]
            if ch == "[":
                bracket += 1
            elif ch == "]":
                bracket -= 1
            elif bracket <= 0 and ch in _DELIMITERS:
                break
            elif ch in "'\"" and bracket <= 0:
                # cast prefix such as [version]'1.0'
                if ch == "'":
                    self.single_quoted()
                else:
                    self.double_quoted()
                continue
            self.pos += 1
        if self.pos == start:
            raise self.error(f"unexpected character {self.text[start]!r}")
        return RawNode(start=start, end=self.pos, text=self.text[start:self.pos])


def parse(text: str) -> HashtableNode:
    """Parse manifest text into its top-level hashtable node."""
    return _Reader(text).document()
