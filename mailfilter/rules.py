"""Rule store for email filtering.

Holds the built-in rules plus user-supplied custom rules and renders them
into the numbered list the classifier receives as instructions.
"""

import logging
from collections.abc import Iterable, Sequence

from mailfilter.schemas.filtering import FilterAction, FilterRule

logger = logging.getLogger(__name__)

# Custom rules sort after the built-ins.
CUSTOM_RULE_BASE_PRIORITY = 10

DEFAULT_RULES: tuple[FilterRule, ...] = (
    FilterRule(
        id="spam-promotional",
        name="Promotional Spam",
        description="Delete obvious promotional and spam emails",
        condition="Email contains promotional content, unsubscribe links, or marketing language",
        action=FilterAction.DELETE,
        priority=1,
    ),
    FilterRule(
        id="newsletter-archive",
        name="Newsletter Archive",
        description="Archive newsletters for later reading",
        condition="Email is a newsletter or digest",
        action=FilterAction.ARCHIVE,
        priority=2,
    ),
    FilterRule(
        id="important-keep",
        name="Important Emails",
        description="Keep important emails from known contacts",
        condition="Email is from a known contact or contains urgent/important content",
        action=FilterAction.KEEP,
        priority=3,
    ),
)

# Checked in order; first matching prefix wins.
_ACTION_PREFIXES: tuple[tuple[str, FilterAction], ...] = (
    ("delete", FilterAction.DELETE),
    ("archive", FilterAction.ARCHIVE),
    ("keep", FilterAction.KEEP),
    ("mark read", FilterAction.MARK_READ),
    ("mark_read", FilterAction.MARK_READ),
)


def parse_custom_rule(text: str, index: int) -> FilterRule:
    """Build a rule from free text like "Delete promotional emails".

    The action is inferred from the leading word(s); anything unrecognized
    falls back to ``keep``.
    """
    lowered = text.strip().lower()
    action = FilterAction.KEEP
    for prefix, candidate in _ACTION_PREFIXES:
        if lowered.startswith(prefix):
            action = candidate
            break

    return FilterRule(
        id=f"custom-{index}",
        name=f"Custom Rule {index + 1}",
        description=text,
        condition=text,
        action=action,
        priority=CUSTOM_RULE_BASE_PRIORITY + index,
    )


def format_rules_for_prompt(rules: Sequence[FilterRule]) -> str:
    """Render rules as a 1-indexed numbered list for the classifier prompt."""
    return "\n".join(
        f"{i}. {rule.description} → Action: {rule.action.value}"
        for i, rule in enumerate(rules, 1)
    )


class RulesManager:
    """Ordered collection of filtering rules.

    Usage::

        rules = RulesManager(["Delete emails from noreply@shop.example"])
        prompt_text = rules.get_rules_for_prompt()
    """

    def __init__(
        self,
        custom_rules: Iterable[str] = (),
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._rules: list[FilterRule] = list(DEFAULT_RULES)
        for index, text in enumerate(custom_rules):
            rule = parse_custom_rule(text, index)
            self._rules.append(rule)
            self._logger.debug("Added custom rule: %s (%s)", rule.name, rule.action.value)
        self._logger.info("Initialized rules with %d rule(s)", len(self._rules))

    def get_rules(self) -> list[FilterRule]:
        """All rules sorted by priority. Ties keep insertion order."""
        return sorted(self._rules, key=lambda rule: rule.priority)

    def get_rules_for_prompt(self) -> str:
        return format_rules_for_prompt(self.get_rules())

    def add_rule(self, rule: FilterRule) -> None:
        """Append a rule. Raises ValueError if the id is already taken."""
        if any(existing.id == rule.id for existing in self._rules):
            raise ValueError(f"Rule id already exists: {rule.id}")
        self._rules.append(rule)
        self._logger.info("Added new rule: %s", rule.name)

    def remove_rule(self, rule_id: str) -> bool:
        """Remove a rule by id. Returns True if removed, False if not found."""
        original_len = len(self._rules)
        self._rules = [rule for rule in self._rules if rule.id != rule_id]
        removed = len(self._rules) < original_len
        if removed:
            self._logger.info("Removed rule: %s", rule_id)
        return removed
