"""
JSON Schema → GBNF grammar compiler.

This is the main entry point for grammar-constrained JSON output. The compiler
walks a parsed JsonSchemaNode tree and builds a GrammarRuleSet whose root rule
accepts exactly the JSON documents that satisfy the schema's structure:

    - object: "{" members "}" with properties in declared order, required
      members always present and optional members free to appear or not,
      with correct comma placement for every subset actually emitted
    - array: "[" (item ("," item)*)? "]"
    - string: generic JSON string, or an alternation of enum literals
    - number / integer: JSON numeric literal (integer has no fraction)
    - boolean: "true" | "false"
    - null: "null"
    - anyOf / oneOf / type lists: alternation of the options

Whitespace is allowed between tokens, so both compact and pretty-printed
documents match. Additional properties are never allowed.

Limitations:
    minimum, maximum, pattern, format, minLength and similar value keywords
    are accepted but NOT compiled into the grammar. Documents produced under
    the grammar may still violate them; validate with
    pocket_llama.validation.validate_document when they matter.

Usage:
    ```python
    import json
    from pocket_llama.grammar import json_schema_to_gbnf

    grammar = json_schema_to_gbnf({"schema": json.dumps({
        "type": "object",
        "properties": {"name": {"type": "string"}, "age": {"type": "number"}},
        "required": ["name"]
    })})
    print(grammar)
    ```
"""

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pocket_llama.errors import ParseError, ValidationError
from pocket_llama.grammar.rules import (
    CharClass,
    GrammarRule,
    GrammarRuleSet,
    GrammarTerm,
    Literal,
    Repeat,
    RuleRef,
    alt,
    optional,
    rule_name,
    seq,
)
from pocket_llama.schema import (
    ArrayNode,
    JsonSchemaNode,
    ObjectNode,
    ScalarNode,
    UnionNode,
    parse_schema,
)

logger = logging.getLogger(__name__)

_DIGIT = CharClass((("0", "9"),))
_HEX = CharClass((("0", "9"), ("a", "f"), ("A", "F")))


def _primitive_rules() -> Dict[str, GrammarTerm]:
    """Bodies of the shared primitive rules, keyed by rule name."""
    integral = alt(Literal("0"), seq(CharClass((("1", "9"),)), Repeat(_DIGIT, "*")))
    string_char = alt(
        CharClass((('"', '"'), ("\\", "\\"), ("\x7f", "\x7f"), ("\x00", "\x1f")), negated=True),
        seq(
            Literal("\\"),
            alt(CharClass.of('"\\/bfnrt'), seq(Literal("u"), _HEX, _HEX, _HEX, _HEX)),
        ),
    )
    return {
        "ws": Repeat(CharClass.of(" \t\n\r"), "*"),
        "string": seq(Literal('"'), Repeat(string_char, "*"), Literal('"')),
        "integer": seq(optional(Literal("-")), integral),
        "number": seq(
            optional(Literal("-")),
            integral,
            optional(seq(Literal("."), Repeat(_DIGIT, "+"))),
            optional(seq(CharClass.of("eE"), optional(CharClass.of("-+")), Repeat(_DIGIT, "+"))),
        ),
        "boolean": alt(Literal("true"), Literal("false")),
        "null": Literal("null"),
    }


PRIMITIVE_RULES = _primitive_rules()

WS = RuleRef("ws")

_JSON_VALUE_RULES = ("object", "array", "string", "number", "boolean", "null")


class GrammarCompiler:
    """
    Compiles parsed schema trees into GBNF rule sets.

    A compiler instance holds no state between calls, so one instance can be
    shared freely.

    Example:
        ```python
        compiler = GrammarCompiler()
        rule_set = compiler.compile(parse_schema(schema))
        text = rule_set.render()
        ```
    """

    def compile(self, node: JsonSchemaNode) -> GrammarRuleSet:
        """
        Build the rule set for a schema tree.

        Args:
            node: Root of the parsed schema

        Returns:
            GrammarRuleSet: Validated rules whose root is "root"
        """
        build = _Build()
        value = build.visit(node, ["root"])
        # objects, arrays, unions and enums at the top already define "root"
        if "root" not in build.rules:
            build.rules.add(GrammarRule("root", (value,)))

        build.finish()
        build.rules.validate()
        logger.debug(f"Compiled schema into {len(build.rules)} grammar rules")
        return build.rules


class _Build:
    """State for a single compilation: the rule set and the primitives used."""

    def __init__(self):
        self.rules = GrammarRuleSet(root="root")
        self.used_primitives: List[str] = []

    def primitive(self, name: str) -> RuleRef:
        if name not in self.used_primitives:
            self.used_primitives.append(name)
        return RuleRef(name)

    def finish(self) -> None:
        """Append the shared primitive rules that were referenced."""
        for name in PRIMITIVE_RULES:
            if name in self.used_primitives:
                self.rules.add(GrammarRule(name, (PRIMITIVE_RULES[name],)))

    def named(self, path: List[str], body: GrammarTerm) -> RuleRef:
        """Add a rule named after the schema path; children are added first."""
        name = self.rules.unique_name(rule_name(*path))
        self.rules.add(GrammarRule(name, (body,)))
        return RuleRef(name)

    def visit(self, node: JsonSchemaNode, path: List[str]) -> GrammarTerm:
        if isinstance(node, ObjectNode):
            return self._object(node, path)
        elif isinstance(node, ArrayNode):
            return self._array(node, path)
        elif isinstance(node, UnionNode):
            return self._union(node, path)
        elif isinstance(node, ScalarNode):
            return self._scalar(node, path)
        else:
            raise ParseError(f"Unsupported schema construct: {type(node).__name__}")

    def _object(self, node: ObjectNode, path: List[str]) -> RuleRef:
        ws = self.primitive("ws")

        members = []
        for prop, prop_node in node.properties.items():
            value = self.visit(prop_node, path + ["properties", prop])
            member = seq(Literal(json.dumps(prop, ensure_ascii=False)), ws, Literal(":"), ws, value)
            members.append((member, node.is_required(prop)))

        body = _object_members(members, ws)
        if body is None:
            term = seq(Literal("{"), ws, Literal("}"))
        elif any(required for _, required in members):
            term = seq(Literal("{"), ws, body, ws, Literal("}"))
        else:
            term = seq(Literal("{"), ws, optional(seq(body, ws)), Literal("}"))
        return self.named(path, term)

    def _array(self, node: ArrayNode, path: List[str]) -> RuleRef:
        ws = self.primitive("ws")
        item = self.visit(node.items, path + ["items"])
        more = Repeat(seq(ws, Literal(","), ws, item), "*")
        term = seq(Literal("["), ws, optional(seq(item, more, ws)), Literal("]"))
        return self.named(path, term)

    def _union(self, node: UnionNode, path: List[str]) -> RuleRef:
        options = tuple(
            self.visit(option, path + ["anyOf", str(index)])
            for index, option in enumerate(node.options)
        )
        return self.named(path, alt(*options) if len(options) > 1 else options[0])

    def _scalar(self, node: ScalarNode, path: List[str]) -> GrammarTerm:
        if node.enum is None:
            return self.primitive(node.kind)

        literals = [Literal(json.dumps(value, ensure_ascii=False)) for value in node.enum]
        body = alt(*literals) if len(literals) > 1 else literals[0]
        return self.named(path, body)


def _object_members(members: List[Any], ws: GrammarTerm) -> Optional[GrammarTerm]:
    """
    Build the member list of an object rule.

    The first emitted member is either an optional property that precedes the
    first required one, or that first required property. Every member after
    it is preceded by a comma and stays optional or mandatory as declared.

    Args:
        members: (member term, is_required) pairs in declared order

    Returns:
        The members term, or None for an object without properties
    """
    if not members:
        return None

    def tail(start: int) -> List[GrammarTerm]:
        rest = []
        for member, required in members[start:]:
            item = seq(ws, Literal(","), ws, member)
            rest.append(item if required else optional(item))
        return rest

    first_required = next(
        (index for index, (_, required) in enumerate(members) if required), len(members)
    )
    last_candidate = min(first_required, len(members) - 1)

    choices = []
    for index in range(last_candidate + 1):
        member, _ = members[index]
        following = tail(index + 1)
        choices.append(seq(member, *following) if following else member)

    return alt(*choices) if len(choices) > 1 else choices[0]


def compile_schema(schema: Union[Mapping[str, Any], type]) -> str:
    """
    Compile an already-parsed JSON Schema dict (or Pydantic model) to GBNF.

    Args:
        schema: JSON Schema dict or Pydantic BaseModel subclass

    Returns:
        str: GBNF grammar text

    Raises:
        ParseError: If the schema is malformed or unsupported
    """
    return compile_rule_set(schema).render()


def compile_rule_set(schema: Union[Mapping[str, Any], type]) -> GrammarRuleSet:
    """Parse and compile a schema, returning the rule set instead of text."""
    return GrammarCompiler().compile(parse_schema(schema))


def json_object_rule_set() -> GrammarRuleSet:
    """
    Rule set accepting any JSON object, with any members and any nesting.

    The value rule is recursive, so the set renders to GBNF but has no
    GrammarMatcher form.
    """
    value = RuleRef("value")
    member = seq(RuleRef("string"), WS, Literal(":"), WS, value)

    def listing(open_: str, item: GrammarTerm, close: str) -> GrammarTerm:
        more = Repeat(seq(WS, Literal(","), WS, item), "*")
        return seq(Literal(open_), WS, optional(seq(item, more, WS)), Literal(close))

    rules = GrammarRuleSet(root="root")
    rules.add(GrammarRule("root", (RuleRef("object"),)))
    rules.add(GrammarRule("value", (alt(*(RuleRef(name) for name in _JSON_VALUE_RULES)),)))
    rules.add(GrammarRule("object", (listing("{", member, "}"),)))
    rules.add(GrammarRule("array", (listing("[", value, "]"),)))
    for name in ("ws", "string", "number", "boolean", "null"):
        rules.add(GrammarRule(name, (PRIMITIVE_RULES[name],)))
    rules.validate()
    return rules


def json_object_grammar() -> str:
    """GBNF text for any JSON object."""
    return json_object_rule_set().render()


def load_schema_text(params: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Check the ``schema`` parameter and decode it.

    The checks run in a fixed order and each failure has its own message.

    Raises:
        ValidationError: If the parameter is missing, not a string or empty
        ParseError: If the text is not valid JSON
    """
    if "schema" not in params:
        raise ValidationError("Missing required parameter: schema")

    text = params["schema"]
    if not isinstance(text, str):
        raise ValidationError("Schema must be a string")
    if not text.strip():
        raise ValidationError("Schema cannot be empty")

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON in schema: {e.msg} at position {e.pos}") from e


def json_schema_to_gbnf(params: Mapping[str, Any]) -> str:
    """
    Compile a JSON-encoded schema to GBNF grammar text.

    Args:
        params: Mapping with a ``schema`` key holding the schema as JSON text

    Returns:
        str: GBNF grammar text with the root rule first

    Raises:
        ValidationError: "Missing required parameter: schema",
            "Schema must be a string" or "Schema cannot be empty"
        ParseError: "Invalid JSON in schema" or an unsupported construct

    Example:
        ```python
        json_schema_to_gbnf({"schema": '{"type": "boolean"}'})
        # 'root ::= boolean\\nboolean ::= "true" | "false"\\n'
        ```
    """
    return compile_schema(load_schema_text(params))
