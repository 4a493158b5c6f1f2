"""Keyword-based category tagging for rules.

No model dependency: pure regex matching over the rule text.
"""

from __future__ import annotations

import re

_CATEGORY_PATTERNS: dict[str, list[re.Pattern]] = {
    "git": [
        re.compile(p, re.I)
        for p in (
            r"\bgit\b", r"\bcommit\b", r"\bmerge\b", r"\bbranch\b", r"\brebase\b",
            r"\bpush\b", r"\bpull\b", r"\bcherry.?pick\b", r"\breset\b", r"\brevert\b",
            r"\bstag(e|ing)\b",
        )
    ],
    "python": [
        re.compile(p, re.I)
        for p in (r"\bpython\b", r"\bpip\b", r"\bvenv\b", r"\buv run\b", r"\.py\b", r"\bpoetry\b")
    ],
    "typescript": [
        re.compile(p, re.I)
        for p in (
            r"\btypescript\b", r"\btsconfig\b", r"\btype\s+error", r"\binterface\b",
            r"\.ts\b", r"\btype\s+annotation", r"\bas\s+any\b",
        )
    ],
    "react": [
        re.compile(p, re.I)
        for p in (
            r"\breact\b", r"\bcomponent\b", r"\bjsx\b", r"\btsx\b", r"\busestate\b",
            r"\buseeffect\b", r"\bprops\b", r"\brender\b", r"\bhook\b",
        )
    ],
    "file-editing": [
        re.compile(r"\bEdit\b"),
        re.compile(r"\bWrite\b"),
        re.compile(r"\bRead\b"),
        *(
            re.compile(p, re.I)
            for p in (r"\bfile\b", r"\bedit\s+loop\b", r"\bincremental\b", r"\bmodif(y|ied|ying)\b")
        ),
    ],
    "debugging": [
        re.compile(p, re.I)
        for p in (
            r"\bdebug", r"\berror\b", r"\broot\s+cause\b", r"\btroubleshoot",
            r"\bstack\s*trace\b", r"\bdiagnos", r"\binvestigat",
        )
    ],
    "testing": [
        re.compile(p, re.I)
        for p in (
            r"\btests?\b", r"\bspec\b", r"\bassert", r"\bcoverage\b", r"\bjest\b",
            r"\bpytest\b", r"\bunit\s+test",
        )
    ],
    "architecture": [
        re.compile(p, re.I)
        for p in (r"\barchitect", r"\bpattern\b", r"\brefactor", r"\bdesign\b", r"\babstract", r"\bmodular")
    ],
    "config": [
        re.compile(p, re.I)
        for p in (r"\bconfig", r"\bsetting", r"\.json\b", r"\benvironment\b", r"\bdocker", r"\bcompose\b")
    ],
    "security": [
        re.compile(p, re.I)
        for p in (
            r"\bsecret", r"\bpassword", r"\btoken\b", r"\bapi\s*key", r"\bauth",
            r"\bsensitive\b", r"\bcredential",
        )
    ],
    "planning": [
        re.compile(p, re.I)
        for p in (r"\bplan\b", r"\bscope\b", r"\bdecision\b", r"\bphase\b", r"\bprerequisit", r"\bworkflow\b", r"\bstrateg")
    ],
    "deployment": [
        re.compile(p, re.I)
        for p in (r"\bdeploy", r"\bbuild\b", r"\bci/cd\b", r"\bpipeline\b", r"\brelease\b")
    ],
}


def categorize_rule(text: str) -> list[str]:
    """Return the categories whose patterns match ``text``, or ``["general"]``."""
    categories = [
        category
        for category, patterns in _CATEGORY_PATTERNS.items()
        if any(p.search(text) for p in patterns)
    ]
    return categories or ["general"]
