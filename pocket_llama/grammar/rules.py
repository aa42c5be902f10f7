"""
Grammar data model - terms, rules and rule sets.

The grammar compiler builds a GrammarRuleSet from a parsed schema and renders
it to GBNF text, the notation llama.cpp uses for grammar-constrained decoding.
Rule sets produced from JSON Schemas are never recursive, so the same set can
also be rendered as one regular expression for matching documents offline.

Term Hierarchy:
    GrammarTerm (abstract)
    ├── Literal: exact text, e.g. "{"
    ├── CharClass: one character from a set of ranges, e.g. [0-9]
    ├── RuleRef: reference to another rule by name
    ├── Sequence: terms one after another
    ├── Alternation: exactly one of several terms
    └── Repeat: a term with ?, * or +

Usage:
    ```python
    from pocket_llama.grammar.rules import GrammarRule, GrammarRuleSet, Literal, Alternation

    rules = GrammarRuleSet()
    rules.add(GrammarRule("root", (Alternation((Literal("true"), Literal("false"))),)))
    print(rules.render())  # root ::= "true" | "false"
    ```
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Tuple

from pocket_llama.errors import ParseError

Resolver = Callable[[str], str]

_REGEX_SPECIAL = set("\\.^$*+?()[]{}|")
_REGEX_CLASS_SPECIAL = set("\\]-[^")
_RULE_NAME_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


def rule_name(*parts: str) -> str:
    """
    Build a GBNF-safe rule name from path segments.

    Example:
        ```python
        rule_name("root", "properties", "home_address")  # "root-properties-home-address"
        ```
    """
    joined = "-".join(parts).lower()
    name = re.sub(r"[^a-z0-9]+", "-", joined).strip("-")
    return name or "rule"


def _gbnf_char(char: str, in_class: bool) -> str:
    if char == "\\":
        return "\\\\"
    if char == "\n":
        return "\\n"
    if char == "\r":
        return "\\r"
    if char == "\t":
        return "\\t"
    if in_class and char in "[]":
        return "\\" + char
    if not in_class and char == '"':
        return '\\"'
    if ord(char) < 0x20 or ord(char) == 0x7F:
        return f"\\x{ord(char):02X}"
    return char


def _regex_char(char: str, in_class: bool) -> str:
    special = _REGEX_CLASS_SPECIAL if in_class else _REGEX_SPECIAL
    return "\\" + char if char in special else char


class GrammarTerm(ABC):
    """Abstract base for everything that can appear in a rule body."""

    @abstractmethod
    def to_gbnf(self) -> str:
        """Render this term in GBNF notation."""
        pass

    @abstractmethod
    def to_regex(self, resolve: Resolver) -> str:
        """
        Render this term as a regular expression.

        Args:
            resolve: Returns the regex for a rule name (used by RuleRef)
        """
        pass

    def references(self) -> Iterator[str]:
        """Yield the names of all rules this term refers to."""
        return iter(())

    @property
    def is_atomic(self) -> bool:
        """Whether the GBNF rendering can take a suffix operator without parentheses."""
        return False


@dataclass(frozen=True)
class Literal(GrammarTerm):
    text: str

    def to_gbnf(self) -> str:
        return '"' + "".join(_gbnf_char(c, in_class=False) for c in self.text) + '"'

    def to_regex(self, resolve: Resolver) -> str:
        return "".join(_regex_char(c, in_class=False) for c in self.text)

    @property
    def is_atomic(self) -> bool:
        return True


@dataclass(frozen=True)
class CharClass(GrammarTerm):
    """
    One character drawn from (or, when negated, outside) a set of ranges.

    Attributes:
        ranges: Inclusive (low, high) character pairs
        negated: Match any character NOT in the ranges
    """

    ranges: Tuple[Tuple[str, str], ...]
    negated: bool = False

    @classmethod
    def of(cls, chars: str, negated: bool = False) -> "CharClass":
        """Build a class from individual characters."""
        return cls(tuple((c, c) for c in chars), negated)

    def _ordered(self) -> List[Tuple[str, str]]:
        # a lone "-" is only literal in GBNF when it comes last
        return sorted(self.ranges, key=lambda r: r == ("-", "-"))

    def to_gbnf(self) -> str:
        body = []
        for low, high in self._ordered():
            if low == high:
                body.append(_gbnf_char(low, in_class=True))
            else:
                body.append(f"{_gbnf_char(low, True)}-{_gbnf_char(high, True)}")
        return "[" + ("^" if self.negated else "") + "".join(body) + "]"

    def to_regex(self, resolve: Resolver) -> str:
        body = []
        for low, high in self.ranges:
            if low == high:
                body.append(_regex_char(low, in_class=True))
            else:
                body.append(f"{_regex_char(low, True)}-{_regex_char(high, True)}")
        return "[" + ("^" if self.negated else "") + "".join(body) + "]"

    @property
    def is_atomic(self) -> bool:
        return True


@dataclass(frozen=True)
class RuleRef(GrammarTerm):
    name: str

    def to_gbnf(self) -> str:
        return self.name

    def to_regex(self, resolve: Resolver) -> str:
        return "(" + resolve(self.name) + ")"

    def references(self) -> Iterator[str]:
        yield self.name

    @property
    def is_atomic(self) -> bool:
        return True


@dataclass(frozen=True)
class Sequence(GrammarTerm):
    items: Tuple[GrammarTerm, ...]

    def to_gbnf(self) -> str:
        return " ".join(
            f"( {item.to_gbnf()} )" if isinstance(item, Alternation) else item.to_gbnf()
            for item in self.items
        )

    def to_regex(self, resolve: Resolver) -> str:
        return "".join(item.to_regex(resolve) for item in self.items)

    def references(self) -> Iterator[str]:
        for item in self.items:
            yield from item.references()


@dataclass(frozen=True)
class Alternation(GrammarTerm):
    options: Tuple[GrammarTerm, ...]

    def to_gbnf(self) -> str:
        return " | ".join(option.to_gbnf() for option in self.options)

    def to_regex(self, resolve: Resolver) -> str:
        return "(" + "|".join(option.to_regex(resolve) for option in self.options) + ")"

    def references(self) -> Iterator[str]:
        for option in self.options:
            yield from option.references()


@dataclass(frozen=True)
class Repeat(GrammarTerm):
    """
    A term repeated according to op.

    Attributes:
        term: The repeated term
        op: "?" (zero or one), "*" (zero or more) or "+" (one or more)
    """

    term: GrammarTerm
    op: str

    def __post_init__(self):
        if self.op not in ("?", "*", "+"):
            raise ValueError(f"Unknown repetition operator: {self.op!r}")

    def to_gbnf(self) -> str:
        inner = self.term.to_gbnf()
        if not self.term.is_atomic:
            inner = f"( {inner} )"
        return inner + self.op

    def to_regex(self, resolve: Resolver) -> str:
        inner = self.term.to_regex(resolve)
        single = isinstance(self.term, CharClass) or (
            isinstance(self.term, Literal) and len(self.term.text) == 1
        )
        if not single:
            inner = f"({inner})"
        return inner + self.op

    def references(self) -> Iterator[str]:
        return self.term.references()


def optional(term: GrammarTerm) -> Repeat:
    return Repeat(term, "?")


def seq(*items: GrammarTerm) -> Sequence:
    return Sequence(tuple(items))


def alt(*options: GrammarTerm) -> Alternation:
    return Alternation(tuple(options))


@dataclass(frozen=True)
class GrammarRule:
    """
    A named production.

    Attributes:
        name: Unique rule name, lowercase letters, digits and dashes
        body: Terms matched in sequence
    """

    name: str
    body: Tuple[GrammarTerm, ...]

    def __post_init__(self):
        if not _RULE_NAME_RE.match(self.name):
            raise ValueError(f"Invalid rule name: {self.name!r}")
        if not self.body:
            raise ValueError(f"Rule {self.name!r} has an empty body")

    def references(self) -> Iterator[str]:
        for term in self.body:
            yield from term.references()

    def render(self) -> str:
        if len(self.body) == 1:
            rendered = self.body[0].to_gbnf()
        else:
            rendered = Sequence(self.body).to_gbnf()
        return f"{self.name} ::= {rendered}"

    def to_regex(self, resolve: Resolver) -> str:
        return "".join(term.to_regex(resolve) for term in self.body)


@dataclass
class GrammarRuleSet:
    """
    Ordered collection of grammar rules with a designated root.

    Attributes:
        root: Name of the start rule
        rules: Rules keyed by name, in insertion order
    """

    root: str = "root"
    rules: Dict[str, GrammarRule] = field(default_factory=dict)

    def __contains__(self, name: str) -> bool:
        return name in self.rules

    def __len__(self) -> int:
        return len(self.rules)

    def add(self, rule: GrammarRule) -> GrammarRule:
        if rule.name in self.rules:
            raise ValueError(f"Duplicate grammar rule: {rule.name}")
        self.rules[rule.name] = rule
        return rule

    def unique_name(self, base: str) -> str:
        """Return base, or base with the smallest numeric suffix not yet taken."""
        if base not in self.rules:
            return base
        suffix = 2
        while f"{base}-{suffix}" in self.rules:
            suffix += 1
        return f"{base}-{suffix}"

    def validate(self) -> None:
        """
        Check the rule set invariants.

        Raises:
            ParseError: If the root is missing or a reference dangles
        """
        if self.root not in self.rules:
            raise ParseError(f"Grammar has no root rule '{self.root}'")
        for rule in self.rules.values():
            for ref in rule.references():
                if ref not in self.rules:
                    raise ParseError(f"Rule '{rule.name}' references undefined rule '{ref}'")

    def render(self) -> str:
        """
        Render the rule set as GBNF text, root rule first.

        Returns:
            str: Grammar text, one rule per line
        """
        self.validate()
        ordered = [self.rules[self.root]]
        ordered += [rule for name, rule in self.rules.items() if name != self.root]
        return "\n".join(rule.render() for rule in ordered) + "\n"

    def to_regex(self) -> str:
        """
        Render the root rule as a single regular expression.

        Raises:
            ParseError: If the rules are recursive
        """
        self.validate()
        cache: Dict[str, str] = {}
        stack: List[str] = []

        def resolve(name: str) -> str:
            if name in cache:
                return cache[name]
            if name in stack:
                raise ParseError(f"Recursive rule '{name}' has no regular-expression form")
            stack.append(name)
            cache[name] = self.rules[name].to_regex(resolve)
            stack.pop()
            return cache[name]

        return resolve(self.root)
