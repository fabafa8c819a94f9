# Splitting and classification of bracketed links ([text|target|attrs])
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

import re
import enum
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .common import (EXTERNAL_LINK_PREFIXES, CLASS_WIKIPAGE, CLASS_CREATEPAGE,
                     CLASS_FOOTNOTE, CLASS_FOOTNOTE_REF, CLASS_EXTERNAL,
                     CLASS_INTERWIKI, CLASS_ATTACHMENT)
from .logging_utils import logger

# Attributes that may be given in the third part of a link
PERMITTED_ATTRIBUTES = set([
    "accesskey", "charset", "class", "dir", "hreflang", "id", "lang",
    "rel", "rev", "style", "tabindex", "target", "title", "type",
])

# Permitted values of the target attribute
PERMITTED_TARGET_VALUES = set(["_blank", "_self", "_parent", "_top"])

_link_attr_re = re.compile(r"\s*([^\s=']+)='([^']*)'")


class LinkType(enum.Enum):
    """Kinds of links the parser produces."""
    READ = enum.auto()	  # Existing wiki page
    EDIT = enum.auto()	  # Wiki page that does not exist yet
    EMPTY = enum.auto()	  # Link with an empty target
    LOCAL = enum.auto()	  # Footnote [#1]
    LOCALREF = enum.auto()	  # Reference to a footnote [1]
    IMAGE = enum.auto()	  # Inline image
    EXTERNAL = enum.auto()	  # Link to an URL
    INTERWIKI = enum.auto()	  # Link to a page in another wiki
    IMAGELINK = enum.auto()	  # Inline image that links to an URL
    IMAGEWIKILINK = enum.auto()  # Inline image that links to a wiki page
    ATTACHMENT = enum.auto()	  # Link to an attachment


# CSS class of the anchor generated for each link type
LINK_CLASSES = {
    LinkType.READ: CLASS_WIKIPAGE,
    LinkType.EDIT: CLASS_CREATEPAGE,
    LinkType.EMPTY: "",
    LinkType.LOCAL: CLASS_FOOTNOTE,
    LinkType.LOCALREF: CLASS_FOOTNOTE_REF,
    LinkType.IMAGE: "",
    LinkType.EXTERNAL: CLASS_EXTERNAL,
    LinkType.INTERWIKI: CLASS_INTERWIKI,
    LinkType.IMAGELINK: CLASS_EXTERNAL,
    LinkType.IMAGEWIKILINK: CLASS_WIKIPAGE,
    LinkType.ATTACHMENT: CLASS_ATTACHMENT,
}


@dataclass
class Link:
    """The parts of a bracketed link.  ``reference`` is None when the link
    had no explicit target, in which case the text is also the target."""
    text: str
    reference: Optional[str] = None
    attributes: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def has_reference(self) -> bool:
        return self.reference is not None

    @property
    def target(self) -> str:
        return self.reference if self.reference is not None else self.text

    @property
    def _interwiki_point(self) -> int:
        target = self.target
        idx = target.find(":")
        if idx <= 0:
            return -1
        slash = target.find("/")
        if slash >= 0 and slash < idx:
            return -1
        return idx

    @property
    def is_interwiki(self) -> bool:
        """True if the target has the form ``Prefix:Page``, with the colon
        before any slash."""
        return self._interwiki_point >= 0

    @property
    def interwiki_scheme(self) -> Optional[str]:
        idx = self._interwiki_point
        return self.target[:idx] if idx >= 0 else None

    @property
    def interwiki_page(self) -> Optional[str]:
        idx = self._interwiki_point
        return self.target[idx + 1:] if idx >= 0 else None


def parse_link_attributes(attrs: str) -> List[Tuple[str, str]]:
    """Parses ``name='value'`` pairs from the third part of a link.  Parsing
    stops at the first invalid attribute; attributes parsed before it are
    returned."""
    ret: List[Tuple[str, str]] = []
    if "='" not in attrs:
        return ret
    pos = 0
    while pos < len(attrs) and attrs[pos:].strip():
        m = _link_attr_re.match(attrs, pos)
        if m is None:
            logger.warning("syntax error parsing link attributes {!r}"
                           .format(attrs))
            break
        name, value = m.groups()
        if name not in PERMITTED_ATTRIBUTES:
            logger.warning("unknown attribute name {!r} on link"
                           .format(name))
            break
        if name == "target" and value not in PERMITTED_TARGET_VALUES:
            logger.warning("unknown target attribute value={!r} on link"
                           .format(value))
            break
        ret.append((name, value))
        pos = m.end()
    return ret


def parse_link(text: str) -> Link:
    """Splits the contents of a bracketed link into text, target and
    attributes.  ``[Page]`` keeps the text as is; with ``|`` separators
    the text and target are trimmed."""
    assert isinstance(text, str)
    cut1 = text.find("|")
    if cut1 < 0:
        return Link(text)
    cut2 = text.find("|", cut1 + 1)
    if cut2 < 0:
        return Link(text[:cut1].strip(), text[cut1 + 1:].strip())
    link = Link(text[:cut1].strip(), text[cut1 + 1:cut2].strip())
    link.attributes = parse_link_attributes(text[cut2 + 1:].strip())
    return link


def is_access_rule(link: str) -> bool:
    return link.startswith("{ALLOW") or link.startswith("{DENY")


def is_metadata(link: str) -> bool:
    return link.startswith("{SET")


def is_plugin_link(link: str) -> bool:
    return link.startswith("{") and not link.startswith("{$")


def is_variable_link(link: str) -> bool:
    return link.startswith("{$")


def is_external_link(link: str) -> bool:
    return link.startswith(EXTERNAL_LINK_PREFIXES)
