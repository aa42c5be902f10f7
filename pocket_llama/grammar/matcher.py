"""
Grammar matcher - checks documents against a compiled rule set.

Rule sets compiled from JSON Schemas are regular, so the matcher renders the
root rule as a regular expression and builds a character-level FSM with
interegular. Walking that FSM tells whether a complete document is accepted
and whether a partial document can still be completed.

Important:
    interegular FSMs use an Alphabet that maps characters to symbol indices.
    Each step converts char → symbol → transition.

Usage:
    ```python
    from pocket_llama.grammar import GrammarMatcher, compile_rule_set

    matcher = GrammarMatcher(compile_rule_set(schema))
    matcher.accepts('{"name": "a"}')      # True
    matcher.is_viable_prefix('{"na')      # True
    ```
"""

import logging
from typing import Optional, Set

from interegular import parse_pattern

from pocket_llama.grammar.rules import GrammarRuleSet

logger = logging.getLogger(__name__)


class GrammarMatcher:
    """
    Character-level acceptor for a non-recursive grammar.

    Attributes:
        pattern: Regular expression equivalent to the root rule
        fsm: interegular FSM built from the pattern
    """

    def __init__(self, rule_set: GrammarRuleSet):
        self.pattern = rule_set.to_regex()
        self.fsm = parse_pattern(self.pattern).to_fsm()
        self._live = self._live_states()
        logger.debug(f"GrammarMatcher built: {len(self.fsm.states)} states")

    def _step(self, state: int, char: str) -> Optional[int]:
        try:
            symbol = self.fsm.alphabet[char]
        except (KeyError, TypeError):
            return None
        return self.fsm.map.get(state, {}).get(symbol)

    def _walk(self, text: str) -> Optional[int]:
        state = self.fsm.initial
        for char in text:
            state = self._step(state, char)
            if state is None:
                return None
        return state

    def _live_states(self) -> Set[int]:
        """States from which some final state is reachable."""
        live = set(self.fsm.finals)
        changed = True
        while changed:
            changed = False
            for state, transitions in self.fsm.map.items():
                if state not in live and any(t in live for t in transitions.values()):
                    live.add(state)
                    changed = True
        return live

    def accepts(self, text: str) -> bool:
        """Return True when text is a complete document of the grammar."""
        state = self._walk(text)
        return state is not None and state in self.fsm.finals

    def is_viable_prefix(self, text: str) -> bool:
        """Return True when text can still be extended into an accepted document."""
        state = self._walk(text)
        return state is not None and state in self._live
