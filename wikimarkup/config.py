# Configuration of the wiki markup parser, optionally read from a
# Java-style .properties file.
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

import re
import fnmatch
import functools
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from .common import PUSHBACK_BUFFER_SIZE, is_positive

PROPERTY_PREFIX = "wikimarkup."
INLINE_PATTERN_PREFIX = PROPERTY_PREFIX + "inlinePattern."

# Mapping from ParserConfig boolean field to its property key
BOOLEAN_PROPERTIES = {
    "allow_raw_html": "wikimarkup.allowHTML",
    "camel_case_links": "wikimarkup.camelCaseLinks",
    "plain_uris": "wikimarkup.plainUris",
    "use_outlink_image": "wikimarkup.useOutlinkImage",
    "use_rel_nofollow": "wikimarkup.useRelNofollow",
    "inline_images": "wikimarkup.inlineImages",
    "parse_access_rules": "wikimarkup.parseAccessRules",
    "use_attachment_image": "wikimarkup.useAttachmentImage",
    "allow_phpwiki_style_lists": "wikimarkup.allowPHPWikiStyleLists",
    "match_english_plurals": "wikimarkup.matchEnglishPlurals",
}


@dataclass(frozen=True)
class ParserConfig:
    """Options controlling how markup is translated.  A configuration is
    immutable; use ``dataclasses.replace()`` to derive a modified one."""
    allow_raw_html: bool = False
    camel_case_links: bool = False
    plain_uris: bool = False
    use_outlink_image: bool = True
    use_rel_nofollow: bool = False
    inline_images: bool = True
    parse_access_rules: bool = True
    use_attachment_image: bool = True
    allow_phpwiki_style_lists: bool = True
    match_english_plurals: bool = False
    inline_image_patterns: Tuple[str, ...] = ("*.png", "*.jpg", "*.gif")
    pushback_size: int = PUSHBACK_BUFFER_SIZE

    def __post_init__(self):
        assert isinstance(self.inline_image_patterns, tuple)
        assert isinstance(self.pushback_size, int) and self.pushback_size > 0

    @classmethod
    def from_properties(cls, props: Dict[str, str]) -> "ParserConfig":
        """Creates a configuration from a mapping of property names to
        values (see load_properties()).  Unknown keys are ignored and
        missing keys take their default values."""
        kwargs = {}
        for name, key in BOOLEAN_PROPERTIES.items():
            if key in props:
                kwargs[name] = is_positive(props[key])
        patterns = [v.strip() for k, v in sorted(props.items())
                    if k.startswith(INLINE_PATTERN_PREFIX) and v.strip()]
        if patterns:
            kwargs["inline_image_patterns"] = tuple(patterns)
        size = props.get(PROPERTY_PREFIX + "pushbackSize")
        if size is not None and size.strip().isdecimal():
            kwargs["pushback_size"] = int(size)
        return cls(**kwargs)

    def to_properties(self) -> Dict[str, str]:
        """Returns the configuration as a property mapping that
        from_properties() accepts."""
        props = {}
        for f in fields(self):
            if f.name in BOOLEAN_PROPERTIES:
                props[BOOLEAN_PROPERTIES[f.name]] = \
                    "true" if getattr(self, f.name) else "false"
        for i, pat in enumerate(self.inline_image_patterns):
            props["{}{}".format(INLINE_PATTERN_PREFIX, i + 1)] = pat
        props[PROPERTY_PREFIX + "pushbackSize"] = str(self.pushback_size)
        return props

    def is_image_link(self, link: str) -> bool:
        """Returns True if the link target should be shown as an inline
        image.  Matching is case-insensitive."""
        if not self.inline_images:
            return False
        link = link.lower()
        for pat in self.inline_image_patterns:
            if _compile_pattern(pat).match(link):
                return True
        return False


@functools.lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> re.Pattern:
    return re.compile(fnmatch.translate(pattern.lower()), re.DOTALL)


_property_escape_re = re.compile(r"\\(u[0-9a-fA-F]{4}|.)", re.DOTALL)
_PROPERTY_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}


def _unescape_property(text: str) -> str:
    def repl(m):
        s = m.group(1)
        if len(s) == 5:
            return chr(int(s[1:], 16))
        return _PROPERTY_ESCAPES.get(s, s)

    return re.sub(_property_escape_re, repl, text)


def _split_property(line: str) -> Tuple[str, str]:
    """Splits a logical line into its key and value.  The key ends at the
    first unescaped ``=``, ``:`` or whitespace."""
    i = 0
    while i < len(line):
        ch = line[i]
        if ch == "\\":
            i += 2
            continue
        if ch in "=: \t\f":
            break
        i += 1
    key = line[:i]
    rest = line[i:].lstrip(" \t\f")
    if rest[:1] in ("=", ":"):
        rest = rest[1:].lstrip(" \t\f")
    return _unescape_property(key), _unescape_property(rest)


def parse_properties(text: str) -> Dict[str, str]:
    """Parses the contents of a .properties file.  Supports ``key = value``,
    ``key: value`` and ``key value`` lines, ``#`` and ``!`` comments, lines
    continued with a trailing backslash, and the backslash escapes of Java
    properties files (``\\=``, ``\\:``, ``\\t``, ``\\uXXXX`` etc.)."""
    assert isinstance(text, str)
    props: Dict[str, str] = {}
    pending = ""
    for line in text.splitlines():
        line = pending + line.lstrip() if pending else line.strip()
        pending = ""
        if not line or line[0] in "#!":
            continue
        # An odd number of trailing backslashes continues the line
        if (len(line) - len(line.rstrip("\\"))) % 2:
            pending = line[:-1]
            continue
        key, value = _split_property(line)
        props[key] = value
    if pending:
        key, value = _split_property(pending)
        props[key] = value
    return props


def load_properties(path: Union[str, Path],
                    encoding: Optional[str] = "utf-8") -> Dict[str, str]:
    """Reads a .properties file and returns its keys and values."""
    with open(path, "r", encoding=encoding) as f:
        return parse_properties(f.read())
