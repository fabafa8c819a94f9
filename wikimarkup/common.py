# Definitions shared by the wiki markup parser, the link classifier and
# the context.
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

import re
import enum
import urllib.parse

# Default capacity of the pushback buffer of the character source.
PUSHBACK_BUFFER_SIZE = 10 * 1024

# CSS classes attached to generated elements
CLASS_WIKIPAGE = "wikipage"
CLASS_CREATEPAGE = "createpage"
CLASS_INTERWIKI = "interwiki"
CLASS_FOOTNOTE = "footnote"
CLASS_FOOTNOTE_REF = "footnoteref"
CLASS_EXTERNAL = "external"
CLASS_ATTACHMENT = "attachment"
CLASS_OUTLINK = "outlink"
CLASS_HASHLINK = "hashlink"
CLASS_ERROR = "error"
CLASS_INLINE = "inline"
CLASS_INFOLINK = "infolink"
CLASS_INLINE_CODE = "inline-code"

# Images referenced by generated markup, relative to the base URL
OUTLINK_IMAGE = "images/out.png"
ATTACHMENT_IMAGE = "images/attachment_small.png"

# Elements that are written as <tag /> when they have no content.  Any
# other element gets an empty text child when it is closed without
# content.
EMPTY_ELEMENTS = set([
    "area", "base", "br", "col", "hr", "img", "input", "link", "meta",
    "p", "param",
])

# Elements that terminate the leading inline run when paragraphs are
# inserted after parsing.
BLOCK_ELEMENTS = set([
    "address", "blockquote", "div", "dl", "fieldset", "form",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "hr", "noscript", "ol", "p", "pre", "table", "ul",
])

# Link targets starting with one of these are external links.
EXTERNAL_LINK_PREFIXES = (
    "http:", "ftp:", "https:", "mailto:", "news:", "file:", "rtsp:", "mms:",
    "ldap:", "gopher:", "nntp:", "telnet:", "wais:", "prospero:", "z39.50s",
    "z39.50r", "vemmi:", "imap:", "nfs:", "acap:", "tip:", "pop:", "dav:",
    "opaquelocktoken:", "sip:", "sips:", "tel:", "fax:", "modem:",
    "soap.beep:", "soap.beeps", "xmlrpc.beep", "xmlrpc.beeps", "urn:", "go:",
    "h323:", "ipp:", "tftp:", "mupdate:", "pres:", "im:", "mtqp", "smb:",
)

# Characters other than letters and digits kept in page names
PUNCTUATION_CHARS_ALLOWED = " ()&+,-=._$"
# Characters other than letters and digits kept in section names
LEGACY_CHARS_ALLOWED = "._"

# Characters that may follow a tilde to be output literally
TILDE_ESCAPABLE = "|~\\*#-!'_[{]}%"

# Ampersand that does not start an entity or character reference
_lone_amp_re = re.compile(r"&(?!#?[A-Za-z0-9]+;)")

# Characters that cannot appear in an XML document
ILLEGAL_XML_CHARS_RE = re.compile(
    "[^\x09\x0a\x0d\x20-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]")


class WikiMarkupError(Exception):
    """Fatal parse failure.  No document is produced when this is raised."""
    pass


class PushbackOverflowError(WikiMarkupError):
    """More characters were pushed back than the buffer can hold."""
    pass


class PluginError(Exception):
    """A plugin could not be found, its invocation could not be parsed,
    or it failed while executing."""
    pass


class AccessRuleError(Exception):
    """An access control rule embedded in a page could not be parsed."""
    pass


def escape_html_entities(text: str) -> str:
    """Escapes ``<``, ``>`` and ``"`` as entities.  Ampersands are escaped
    unless they start a well-formed entity reference such as ``&amp;`` or
    ``&#8364;``."""
    assert isinstance(text, str)
    text = re.sub(_lone_amp_re, "&amp;", text)
    return text.replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")


def clean_string(text: str, allowed: str) -> str:
    """Removes all characters that are neither letters, digits nor in
    ``allowed``.  The first kept character of each word is uppercased,
    where words are separated by removed characters.  Runs of whitespace
    are treated as a single character."""
    text = text.strip()
    parts = []
    is_word = True
    was_space = False
    for ch in text:
        if ch.isspace():
            if was_space:
                continue
            was_space = True
        else:
            was_space = False
        if ch.isalnum() or ch in allowed:
            if is_word:
                ch = ch.upper()
            parts.append(ch)
            is_word = False
        else:
            is_word = True
    return "".join(parts)


def clean_link(link: str) -> str:
    """Cleans a page name given in a link."""
    return clean_string(link, PUNCTUATION_CHARS_ALLOWED)


def wikify_link(link: str) -> str:
    """Converts text to the compact CamelCase form used for section
    names."""
    return clean_string(link, LEGACY_CHARS_ALLOWED)


def is_number(text: str) -> bool:
    if len(text) > 1 and text[0] == "-":
        text = text[1:]
    return len(text) > 0 and text.isdecimal()


def is_positive(value) -> bool:
    """Returns True if a property value means "enabled"."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "on", "yes")


def encode_name(name: str) -> str:
    """URL-encodes a page or section name for use in anchors."""
    return urllib.parse.quote_plus(name, safe="/*")


def cleanup_suspect_data(text: str) -> str:
    """Replaces characters that are not allowed in XML by their hex code."""
    def repl(m):
        return "0x{:02X}".format(ord(m.group(0)))

    return re.sub(ILLEGAL_XML_CHARS_RE, repl, text)


class UrlKind(enum.Enum):
    """Kinds of URLs generated for links (see WikiContext.build_url())."""
    VIEW = enum.auto()	 # Viewing a page
    EDIT = enum.auto()	 # Creating or editing a page
    ATTACH = enum.auto()	 # Downloading an attachment
    INFO = enum.auto()	 # Information about a page or attachment
    NONE = enum.auto()	 # Static resource relative to the base URL
