# =============================================================================
# Folder Matcher
# =============================================================================
# Decides which folders of a server listing a discovery call keeps.
#
# A folder is excluded if it matches any exclude name rule or carries any
# exclude flag. Otherwise it is included if it matches any include name
# rule or carries any include flag. Exclusion always wins.
#
# Name rules:
#   "Work/*"              case-insensitive glob
#   re.compile(r"^Arch")  regular expression (searched, not anchored)
#   ["INBOX", "Sent*"]    any of several rules
# =============================================================================

import fnmatch
import re
from collections.abc import Iterable

from mail_retriever.core.folder import normalize_flag
from mail_retriever.core.options import FolderFilter, NameRule


def name_matches(name: str, rules: NameRule | None) -> bool:
    """
    Check a folder name against one rule or a collection of rules.

    Example:
        >>> name_matches("Work/Projects", "work/*")
        True
        >>> name_matches("Archive 2024", re.compile(r"\\d{4}$"))
        True
    """
    if rules is None:
        return False
    if isinstance(rules, (str, re.Pattern)):
        rules = [rules]
    return any(_rule_matches(name, rule) for rule in rules)


def _rule_matches(name: str, rule: str | re.Pattern) -> bool:
    if isinstance(rule, re.Pattern):
        return rule.search(name) is not None
    return fnmatch.fnmatchcase(name.lower(), str(rule).lower())


def flags_intersect(flags: Iterable[str], wanted: Iterable[str]) -> bool:
    """Case-insensitive set intersection test on mailbox attributes."""
    normalized = {normalize_flag(flag) for flag in flags}
    return any(normalize_flag(flag) in normalized for flag in wanted)


class FolderMatcher:
    """
    Applies a FolderFilter to folder names and attributes.

    Usage:
        >>> matcher = FolderMatcher(FolderFilter(include_names="Work/*"))
        >>> matcher.matches("Work/Alpha", {"hasnochildren"})
        True
        >>> matcher.matches("Trash", {"trash"})
        False
    """

    def __init__(self, folder_filter: FolderFilter | None = None) -> None:
        self.filter = folder_filter or FolderFilter()

    def is_excluded(self, name: str, flags: Iterable[str]) -> bool:
        return name_matches(name, self.filter.exclude_names) or flags_intersect(
            flags, self.filter.exclude_flags
        )

    def is_included(self, name: str, flags: Iterable[str]) -> bool:
        return name_matches(name, self.filter.include_names) or flags_intersect(
            flags, self.filter.include_flags
        )

    def matches(self, name: str, flags: Iterable[str] = ()) -> bool:
        flags = list(flags)
        if self.is_excluded(name, flags):
            return False
        return self.is_included(name, flags)
