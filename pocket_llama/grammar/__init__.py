"""
Grammar compilation module.

This module turns JSON Schemas into GBNF grammars for constrained decoding.

Components:
    - rules: GrammarTerm / GrammarRule / GrammarRuleSet data model and renderers
    - compiler: JsonSchemaNode → GrammarRuleSet, plus the string entry point
    - matcher: interegular FSM acceptor used to check documents offline

Compilation Flow:
    1. Decode the JSON text (json_schema_to_gbnf only)
    2. Parse the schema into a JsonSchemaNode tree
    3. Build one named rule per nested object, array, union and enum
    4. Validate references and render GBNF text, root rule first

Example:
    ```python
    from pocket_llama.grammar import compile_schema

    grammar = compile_schema({"type": "array", "items": {"type": "integer"}})
    ```
"""

from pocket_llama.grammar.compiler import (
    GrammarCompiler,
    compile_rule_set,
    compile_schema,
    json_object_grammar,
    json_object_rule_set,
    json_schema_to_gbnf,
    load_schema_text,
)
from pocket_llama.grammar.matcher import GrammarMatcher
from pocket_llama.grammar.rules import GrammarRule, GrammarRuleSet

__all__ = [
    "GrammarCompiler",
    "GrammarMatcher",
    "GrammarRule",
    "GrammarRuleSet",
    "compile_rule_set",
    "compile_schema",
    "json_object_grammar",
    "json_object_rule_set",
    "json_schema_to_gbnf",
    "load_schema_text",
]
