# Wiki markup parser.  Translates JSPWiki-style markup into a tree of
# WikiNode elements in a single pass over the input characters.
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

import re
import html
import enum
from dataclasses import dataclass, field, replace
from typing import (TYPE_CHECKING, Callable, Dict, Iterator, List, Optional,
                    TextIO, Union)

from .common import (BLOCK_ELEMENTS, EMPTY_ELEMENTS, TILDE_ESCAPABLE,
                     CLASS_ERROR, CLASS_FOOTNOTE, CLASS_HASHLINK,
                     CLASS_INFOLINK, CLASS_INLINE, CLASS_INLINE_CODE,
                     CLASS_OUTLINK, OUTLINK_IMAGE, ATTACHMENT_IMAGE,
                     ILLEGAL_XML_CHARS_RE, UrlKind, WikiMarkupError,
                     PluginError, AccessRuleError,
                     escape_html_entities, clean_link, wikify_link,
                     encode_name, is_number, cleanup_suspect_data)
from .config import ParserConfig
from .links import (LinkType, LINK_CLASSES, parse_link, is_access_rule,
                    is_metadata, is_external_link)
from .logging_utils import logger
from .source import PushbackSource

if TYPE_CHECKING:
    from .core import WikiContext


# Recognizes CamelCase words and bare URIs in plain text.  Group 1 is the
# text preceding the match, group 2 the word or URI, group 3 the URI
# protocol and group 4 the rest of the URI.
CAMELCASE_RE = re.compile(
    r"(^|[^A-Za-z0-9]+)([A-Z]+[a-z]+[A-Z]+[A-Za-z0-9]*"
    r"|(http://|https://|mailto:)([A-Za-z0-9_/\.\+\?\#\-\@=&;~%]+))")


class WikiNode:
    """Element in the parse tree.  Children are either strings (text that
    is ready for HTML output) or other WikiNode objects."""
    __slots__ = (
        "tag",
        "attrs",
        "children",
    )

    def __init__(self, tag: str, attrs: Optional[Dict[str, str]] = None,
                 children: Optional[List[Union[str, "WikiNode"]]] = None
                 ) -> None:
        assert isinstance(tag, str)
        self.tag = tag
        self.attrs: Dict[str, str] = attrs if attrs is not None else {}
        self.children: List[Union[str, "WikiNode"]] = \
            children if children is not None else []

    def __str__(self) -> str:
        return "<{}{} {}>".format(self.tag, self.attrs,
                                  ", ".join(map(repr, self.children)))

    def __repr__(self) -> str:
        return self.__str__()

    def find_child(self, tags: Union[str, set]) -> Iterator["WikiNode"]:
        """Yields the direct children that have one of the given tags."""
        if isinstance(tags, str):
            tags = set([tags])
        for child in self.children:
            if isinstance(child, WikiNode) and child.tag in tags:
                yield child

    def find_child_recursively(self, tags: Union[str, set]
                               ) -> Iterator["WikiNode"]:
        """Like find_child(), but also searches nested nodes."""
        if isinstance(tags, str):
            tags = set([tags])
        for child in self.children:
            if isinstance(child, WikiNode):
                if child.tag in tags:
                    yield child
                yield from child.find_child_recursively(tags)


class PluginNode(WikiNode):
    """Plugin invocation.  The plugin is executed when the tree is
    rendered (see WikiContext.invoke_plugin())."""
    __slots__ = (
        "plugin_name",
        "params",
        "source",
    )

    def __init__(self, plugin_name: str, params: Dict[str, str],
                 source: str) -> None:
        super().__init__("plugin")
        self.plugin_name = plugin_name
        self.params = params
        self.source = source

    def __str__(self) -> str:
        return "<plugin {} {}>".format(self.plugin_name, self.params)


class VariableNode(WikiNode):
    """Reference to a variable, such as [{$pagename}].  The value is looked
    up when the tree is rendered."""
    __slots__ = ("var_name",)

    def __init__(self, text: str) -> None:
        super().__init__("variable")
        name = text.strip()
        if name.startswith("{$"):
            name = name[2:]
        if name.endswith("}"):
            name = name[:-1]
        self.var_name = name.strip()

    def __str__(self) -> str:
        return "<variable {}>".format(self.var_name)


class HeadingLevel(enum.IntEnum):
    SMALL = 1	 # !
    MEDIUM = 2	 # !!
    LARGE = 3	 # !!!


HEADING_TAGS = {
    HeadingLevel.LARGE: "h2",
    HeadingLevel.MEDIUM: "h3",
    HeadingLevel.SMALL: "h4",
}


@dataclass
class Heading:
    level: HeadingLevel = HeadingLevel.SMALL
    title_text: str = ""	 # Title as plain text
    title_section: str = ""	 # Section name used in links (Page#Section)
    title_anchor: str = ""	 # Value of the id attribute of the heading


@dataclass
class Document:
    """Result of parsing one page."""
    root: WikiNode
    page_name: str
    source: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    headings: List[Heading] = field(default_factory=list)


class TokenResult(enum.Enum):
    CHARACTER = enum.auto()  # Add the character as text
    ELEMENT = enum.auto()	  # Character was consumed as markup
    IGNORE = enum.auto()	  # Character was consumed, keep line state


class EscapeMode(enum.Enum):
    PRE_BLOCK = enum.auto()	  # {{{ at the start of a line
    INLINE_CODE = enum.auto()  # {{{ elsewhere


@dataclass
class InlineState:
    bold: bool = False
    italic: bool = False
    restart_bold: bool = False	 # Reopen <b> in the next paragraph
    restart_italic: bool = False  # Reopen <i> in the next paragraph
    escaping: Optional[EscapeMode] = None


@dataclass
class ParserState:
    inline: InlineState = field(default_factory=InlineState)
    new_line: bool = True
    open_paragraph: bool = False
    definition: bool = False	  # Inside the term of a definition list
    table_open: bool = False
    row_num: int = 0
    list_bullets: str = ""	  # Bullets of currently open lists
    style_stack: List[bool] = field(default_factory=list)  # True for span
    last_heading: Optional[Heading] = None
    title_section_counter: Dict[str, int] = field(default_factory=dict)


MutatorFn = Callable[["WikiContext", str], str]
HeadingListenerFn = Callable[["WikiContext", Heading], None]


class MarkupParser:
    """Parser for one page of wiki markup.  The input may be a string or a
    text stream.  Call parse() to obtain the Document."""
    __slots__ = (
        "ctx",		 # WikiContext providing page lookups etc.
        "config",	 # ParserConfig
        "page_name",	 # Name of the page being parsed
        "source",	 # PushbackSource for the input
        "text",	 # Input text if given as a string, else None
        "clean",	 # True for the parser used to clean heading titles
        "clean_parser",  # Lazily created parser for heading titles
        "parser_stack",  # Currently open elements, root first
        "state",	 # ParserState
        "plain_text",	 # Text not yet added to the tree
        "metadata",	 # Values set with [{SET name=value}]
        "headings",	 # Headings found so far
        "link_mutators",
        "local_link_mutators",
        "external_link_mutators",
        "attachment_link_mutators",
        "heading_listeners",
        "outlink_image_url",  # Cached URL of the outlink image
    )

    def __init__(self, ctx: "WikiContext", text: Union[str, TextIO],
                 page_name: Optional[str] = None,
                 config: Optional[ParserConfig] = None,
                 clean: bool = False) -> None:
        self.ctx = ctx
        self.config = config if config is not None else ctx.config
        self.page_name = page_name if page_name is not None else ctx.title
        assert isinstance(self.page_name, str)  # ctx.start_page() or name
        self.clean = clean
        self.clean_parser: Optional[MarkupParser] = None
        self.set_input(text)
        self.parser_stack: List[WikiNode] = []
        self.state = ParserState()
        self.plain_text: List[str] = []
        self.metadata: Dict[str, str] = {}
        self.headings: List[Heading] = []
        self.outlink_image_url: Optional[str] = None
        if clean:
            self.link_mutators: List[MutatorFn] = []
            self.local_link_mutators: List[MutatorFn] = []
            self.external_link_mutators: List[MutatorFn] = []
            self.attachment_link_mutators: List[MutatorFn] = []
            self.heading_listeners: List[HeadingListenerFn] = []
        else:
            self.link_mutators = list(ctx.link_mutators)
            self.local_link_mutators = list(ctx.local_link_mutators)
            self.external_link_mutators = list(ctx.external_link_mutators)
            self.attachment_link_mutators = \
                list(ctx.attachment_link_mutators)
            self.heading_listeners = list(ctx.heading_listeners)

    def set_input(self, text: Union[str, TextIO]) -> None:
        """Sets the text to be parsed by the next call to parse()."""
        self.text = text if isinstance(text, str) else None
        self.source = PushbackSource(text, self.config.pushback_size)

    def add_link_transmutator(self, fn: MutatorFn) -> None:
        self.link_mutators.append(fn)

    def add_local_link_hook(self, fn: MutatorFn) -> None:
        self.local_link_mutators.append(fn)

    def add_external_link_hook(self, fn: MutatorFn) -> None:
        self.external_link_mutators.append(fn)

    def add_attachment_link_hook(self, fn: MutatorFn) -> None:
        self.attachment_link_mutators.append(fn)

    def add_heading_listener(self, fn: HeadingListenerFn) -> None:
        self.heading_listeners.append(fn)

    def get_clean_parser(self) -> "MarkupParser":
        """Returns the parser used for extracting the text of heading
        titles.  It passes raw HTML through, ignores access rules and has
        no hooks."""
        if self.clean_parser is None:
            config = replace(self.config, allow_raw_html=True,
                             parse_access_rules=False)
            self.clean_parser = MarkupParser(self.ctx, "", self.page_name,
                                             config=config, clean=True)
        return self.clean_parser

    def parse(self) -> Document:
        """Parses the input and returns the resulting Document.  Raises
        WikiMarkupError if the input cannot be read."""
        root = WikiNode("domroot")
        self.parser_stack = [root]
        self.state = ParserState()
        self.plain_text = []
        self.metadata = {}
        self.headings = []
        try:
            fill_buffer(self)
        finally:
            self.parser_stack = []
        paragraphify(root)
        return Document(root, self.page_name, self.text,
                        self.metadata, self.headings)


def call_mutator_chain(chain: List[MutatorFn], ctx: "WikiContext",
                       text: str) -> str:
    for fn in chain:
        ret = fn(ctx, text)
        if ret is not None:
            text = ret
    return text


def _parser_append_text(parser: MarkupParser, text: str) -> None:
    if not text:
        return
    node = parser.parser_stack[-1]
    if node.children and isinstance(node.children[-1], str):
        node.children[-1] += text
    else:
        node.children.append(text)


def _parser_push(parser: MarkupParser, node: WikiNode) -> WikiNode:
    """Adds the node as a child of the current element and makes it the
    current element."""
    _flush_plain_text(parser)
    parser.parser_stack[-1].children.append(node)
    parser.parser_stack.append(node)
    return node


def _parser_add(parser: MarkupParser, node: WikiNode) -> WikiNode:
    """Adds the node as a child of the current element."""
    _flush_plain_text(parser)
    parser.parser_stack[-1].children.append(node)
    return parser.parser_stack[-1]


def _parser_pop(parser: MarkupParser, tag: str) -> Optional[WikiNode]:
    """Closes the innermost open element with the given tag and everything
    opened inside it.  Returns the new current element, or None if no
    such element is open.  The root is never closed."""
    _flush_plain_text(parser)
    stack = parser.parser_stack
    for i in range(len(stack) - 1, 0, -1):
        node = stack[i]
        if node.tag == tag:
            del stack[i:]
            if not node.children and tag not in EMPTY_ELEMENTS:
                node.children.append("")
            return stack[-1]
    return None


def _parser_have(parser: MarkupParser, tag: str) -> bool:
    return any(node.tag == tag for node in parser.parser_stack[1:])


def make_error(msg: str) -> WikiNode:
    """Returns an element that shows an error message in the output."""
    return WikiNode("span", {"class": CLASS_ERROR},
                    [escape_html_entities(msg)])


def _add_error(parser: MarkupParser, msg: str, sortid: str) -> None:
    parser.ctx.warning(msg, sortid=sortid)
    _parser_add(parser, make_error(msg))


def _flush_plain_text(parser: MarkupParser, scan_links: bool = True) -> int:
    """Adds the buffered text to the current element, converting CamelCase
    words and URIs to links when configured.  Returns the number of
    characters that were buffered."""
    if not parser.plain_text:
        return 0
    text = "".join(parser.plain_text)
    # Empty the buffer first; creating links calls this function
    parser.plain_text = []
    num = len(text)
    config = parser.config
    if not config.allow_raw_html:
        text = escape_html_entities(text)
    if re.search(ILLEGAL_XML_CHARS_RE, text):
        _add_error(parser, "Illegal character in text: {}"
                   .format(cleanup_suspect_data(text)),
                   sortid="parser/flush/illegal")
        return num
    if (scan_links and (config.camel_case_links or config.plain_uris) and
            parser.state.inline.escaping is None and len(text) > 3):
        while True:
            m = re.search(CAMELCASE_RE, text)
            if m is None:
                break
            first = text[:m.start()]
            prefix = m.group(1) or ""
            word = m.group(2)
            protocol = m.group(3)
            text = text[m.end():]
            _parser_append_text(parser, first)
            # ~WikiWord and [WikiWord are not converted
            if prefix.endswith("~") or "[" in prefix:
                if prefix.endswith("~"):
                    prefix = prefix[:-1]
                _parser_append_text(parser, prefix + word)
                continue
            if protocol is not None:
                uri = word
                if uri[-1] in ".,":
                    text = uri[-1] + text
                    uri = uri[:-1]
                _parser_append_text(parser, prefix)
                make_direct_uri_link(parser, uri)
            elif config.camel_case_links:
                _parser_append_text(parser, prefix)
                make_camel_case_link(parser, word)
            else:
                _parser_append_text(parser, prefix + word)
    _parser_append_text(parser, text)
    return num


def _read_while(parser: MarkupParser, chars: str) -> str:
    """Reads characters as long as they are in ``chars``."""
    source = parser.source
    parts = []
    while True:
        ch = source.next_char()
        if ch is None:
            break
        if ch not in chars:
            source.push_back(ch)
            break
        parts.append(ch)
    return "".join(parts)


def _read_until(parser: MarkupParser, end_chars: str) -> str:
    """Reads until one of ``end_chars``, which is left in the input.  A
    backslash escapes the following character."""
    source = parser.source
    parts = []
    while True:
        ch = source.next_char()
        if ch is None:
            break
        if ch == "\\":
            ch = source.next_char()
            if ch is None:
                break
        elif ch in end_chars:
            source.push_back(ch)
            break
        parts.append(ch)
    return "".join(parts)


def _read_brace_content(parser: MarkupParser, opening: str,
                        closing: str) -> str:
    """Reads until the brace that has already been opened is closed."""
    source = parser.source
    parts = []
    level = 1
    while True:
        ch = source.next_char()
        if ch is None:
            break
        if ch == "\\":
            continue
        if ch == opening:
            level += 1
        elif ch == closing:
            level -= 1
            if level == 0:
                break
        parts.append(ch)
    return "".join(parts)


def start_block_level(parser: MarkupParser) -> None:
    """Closes inline elements and any open paragraph before a block level
    element.  Bold and italic are reopened in the next paragraph."""
    state = parser.state
    inline = state.inline
    _parser_pop(parser, "i")
    _parser_pop(parser, "b")
    _parser_pop(parser, "tt")
    if state.open_paragraph:
        state.open_paragraph = False
        _parser_pop(parser, "p")
        parser.plain_text.append("\n")
    inline.restart_italic = inline.italic
    inline.restart_bold = inline.bold
    inline.italic = False
    inline.bold = False


def create_anchor(link_type: LinkType, href: str, text: str,
                  section: str) -> WikiNode:
    text = escape_html_entities(text)
    return WikiNode("a", {"class": LINK_CLASSES[link_type],
                          "href": href + section},
                    [text] if text else [])


def _make_inline_image(src: str, alt: str) -> WikiNode:
    return WikiNode("img", {"class": CLASS_INLINE, "src": src, "alt": alt})


def make_link(parser: MarkupParser, link_type: LinkType, link: str,
              text: Optional[str] = None, section: Optional[str] = None,
              attrs=None) -> Optional[WikiNode]:
    """Creates the element(s) for a link of the given type and adds them
    to the tree.  ``link`` is the resolved target (page name, URL or
    attachment name)."""
    ctx = parser.ctx
    config = parser.config
    if text is None:
        text = link
    text = call_mutator_chain(parser.link_mutators, ctx, text)
    section = "#" + section if section is not None else ""
    if not link:
        link_type = LinkType.EMPTY

    node: Optional[WikiNode] = None
    if link_type == LinkType.READ:
        node = create_anchor(link_type, ctx.build_url(UrlKind.VIEW, link),
                             text, section)
    elif link_type == LinkType.EDIT:
        node = create_anchor(link_type, ctx.build_url(UrlKind.EDIT, link),
                             text, "")
        node.attrs["title"] = 'Create "{}"'.format(link)
    elif link_type == LinkType.EMPTY:
        if not config.allow_raw_html:
            text = escape_html_entities(text)
        node = WikiNode("u", children=[text] if text else [])
    elif link_type == LinkType.LOCALREF:
        node = create_anchor(link_type, "#ref-{}-{}"
                             .format(parser.page_name, link),
                             "[" + text + "]", "")
    elif link_type == LinkType.LOCAL:
        if not config.allow_raw_html:
            text = escape_html_entities(text)
        node = WikiNode("a", {"class": CLASS_FOOTNOTE,
                              "name": "ref-{}-{}"
                              .format(parser.page_name, link[1:])},
                        ["[" + text + "]"])
    elif link_type == LinkType.IMAGE:
        node = _make_inline_image(link, text)
    elif link_type == LinkType.IMAGELINK:
        node = create_anchor(link_type, text, "", "")
        node.children.append(_make_inline_image(link, text))
    elif link_type == LinkType.IMAGEWIKILINK:
        node = create_anchor(link_type,
                             ctx.build_url(UrlKind.VIEW, clean_link(text)),
                             "", "")
        node.children.append(_make_inline_image(link, text))
    elif link_type == LinkType.EXTERNAL:
        node = create_anchor(link_type, link, text, section)
        if config.use_rel_nofollow:
            node.attrs["rel"] = "nofollow"
    elif link_type == LinkType.INTERWIKI:
        node = create_anchor(link_type, link, text, section)
    elif link_type == LinkType.ATTACHMENT:
        anchor = create_anchor(link_type,
                               ctx.build_url(UrlKind.ATTACH, link), text, "")
        for k, v in attrs or ():
            anchor.attrs[k] = v
        _parser_add(parser, anchor)
        if config.use_attachment_image:
            img = WikiNode("img", {
                "src": ctx.build_url(UrlKind.NONE, ATTACHMENT_IMAGE),
                "border": "0",
                "alt": "(info)"})
            info = WikiNode("a", {"href": ctx.build_url(UrlKind.INFO, link),
                                  "class": CLASS_INFOLINK}, [img])
            _parser_add(parser, info)
        return anchor
    else:
        raise WikiMarkupError("Unknown link type {}".format(link_type))

    for k, v in attrs or ():
        node.attrs[k] = v
    _parser_add(parser, node)
    return node


def outlink_image(parser: MarkupParser) -> Optional[WikiNode]:
    """Returns the image shown after external links, or None if it is
    disabled."""
    if not parser.config.use_outlink_image:
        return None
    if parser.outlink_image_url is None:
        parser.outlink_image_url = parser.ctx.build_url(UrlKind.NONE,
                                                        OUTLINK_IMAGE)
    return WikiNode("img", {"class": CLASS_OUTLINK,
                            "src": parser.outlink_image_url,
                            "alt": ""})


def _add_outlink_image(parser: MarkupParser) -> None:
    img = outlink_image(parser)
    if img is not None:
        _parser_add(parser, img)


def handle_image_link(parser: MarkupParser, real_link: str, link: str,
                      has_link_text: bool) -> Optional[WikiNode]:
    """Inlines an image.  If the link text is an URL or names an existing
    page, the image links there; otherwise the text is used as the
    alternative text of the image."""
    ctx = parser.ctx
    if has_link_text and is_external_link(link):
        return make_link(parser, LinkType.IMAGELINK, real_link, link)
    possible_page = clean_link(link)
    if has_link_text and ctx.page_exists_and_resolve(
            possible_page, parser.config.match_english_plurals):
        call_mutator_chain(parser.local_link_mutators, ctx, possible_page)
        return make_link(parser, LinkType.IMAGEWIKILINK, real_link, link)
    return make_link(parser, LinkType.IMAGE, real_link, link)


def make_direct_uri_link(parser: MarkupParser, url: str) -> None:
    """Creates a link for an URI found in plain text.  The URI has already
    been HTML-escaped."""
    url = call_mutator_chain(parser.external_link_mutators, parser.ctx, url)
    target = url.replace("&amp;", "&")
    if parser.config.is_image_link(url):
        handle_image_link(parser, target, url, False)
    else:
        make_link(parser, LinkType.EXTERNAL, target, url)
        _add_outlink_image(parser)


def make_camel_case_link(parser: MarkupParser, name: str) -> None:
    ctx = parser.ctx
    name = call_mutator_chain(parser.local_link_mutators, ctx, name)
    matched = ctx.page_exists_and_resolve(
        name, parser.config.match_english_plurals)
    if matched is not None:
        make_link(parser, LinkType.READ, matched, name)
    else:
        make_link(parser, LinkType.EDIT, name, name)


def handle_access_rule(parser: MarkupParser, rule: str) -> None:
    if not parser.config.parse_access_rules:
        return
    if rule.startswith("{"):
        rule = rule[1:]
    if rule.endswith("}"):
        rule = rule[:-1]
    logger.debug("page={} ACL = {}".format(parser.page_name, rule))
    try:
        parser.ctx.apply_access_rule(rule, parser.page_name)
    except AccessRuleError as e:
        _add_error(parser, str(e), sortid="parser/acl")


def handle_metadata(parser: MarkupParser, link: str) -> None:
    """Handles [{SET name=value}], which sets a page attribute."""
    idx = link.find(" ")
    args = link[idx:-1] if idx >= 0 else ""
    eq = args.find("=")
    if eq < 0:
        _add_error(parser, "Invalid SET found: {}".format(link),
                   sortid="parser/set")
        return
    name = args[:eq].strip()
    value = args[eq + 1:].strip()
    if value.startswith("'"):
        value = value[1:]
    if value.endswith("'"):
        value = value[:-1]
    if name and value:
        ctx = parser.ctx
        value = ctx.expand_variables(value)
        parser.metadata[name] = value
        ctx.set_page_attribute(parser.page_name, name, value)


def handle_hyperlinks(parser: MarkupParser, text: str, pos: int) -> None:
    """Handles the contents of a bracketed link."""
    ctx = parser.ctx
    config = parser.config

    if is_access_rule(text):
        handle_access_rule(parser, text)
        return
    if is_metadata(text):
        handle_metadata(parser, text)
        return
    if ctx.is_plugin_invocation(text):
        try:
            node = ctx.execute_plugin(text, pos)
        except PluginError as e:
            logger.info("{}: failed to insert plugin: {}"
                        .format(parser.page_name, e))
            _add_error(parser, "Plugin insertion failed: {}".format(e),
                       sortid="parser/plugin")
            return
        _parser_add(parser, node)
        return

    link = parse_link(text)
    text = link.text
    ref = link.target
    attrs = link.attributes

    if ctx.is_variable_reference(text):
        _parser_add(parser, VariableNode(text))
    elif is_external_link(ref):
        ref = call_mutator_chain(parser.external_link_mutators, ctx, ref)
        if config.is_image_link(ref):
            handle_image_link(parser, ref, text, link.has_reference)
        else:
            make_link(parser, LinkType.EXTERNAL, ref, text, None, attrs)
            _add_outlink_image(parser)
    elif link.is_interwiki:
        scheme = link.interwiki_scheme
        page = link.interwiki_page
        url = ctx.resolve_interwiki(scheme)
        if url is None:
            _add_error(parser, "No InterWiki reference defined in "
                       "properties for Wiki called \"{}\"!".format(scheme),
                       sortid="parser/interwiki")
            return
        url = url.replace("%s", page)
        url = call_mutator_chain(parser.external_link_mutators, ctx, url)
        if config.is_image_link(url):
            handle_image_link(parser, url, text, link.has_reference)
        else:
            make_link(parser, LinkType.INTERWIKI, url, text, None, attrs)
        if is_external_link(url):
            _add_outlink_image(parser)
    elif ref.startswith("#"):
        make_link(parser, LinkType.LOCAL, ref, text, None, attrs)
    elif is_number(ref):
        make_link(parser, LinkType.LOCALREF, ref, text, None, attrs)
    else:
        attachment = ctx.find_attachment(ref, parser.page_name)
        if attachment is not None:
            attachment = call_mutator_chain(parser.attachment_link_mutators,
                                            ctx, attachment)
            if config.is_image_link(ref):
                url = ctx.build_url(UrlKind.ATTACH, attachment)
                handle_image_link(parser, url, text, link.has_reference)
            else:
                make_link(parser, LinkType.ATTACHMENT, attachment, text,
                          None, attrs)
            return
        idx = ref.find("#")
        section = None
        if idx >= 0:
            section = ref[idx + 1:]
            ref = ref[:idx]
        ref = clean_link(ref)
        ref = call_mutator_chain(parser.local_link_mutators, ctx, ref)
        matched = ctx.page_exists_and_resolve(
            ref, parser.config.match_english_plurals)
        if matched is None:
            make_link(parser, LinkType.EDIT, ref, text, None, attrs)
        elif section is not None:
            sectref = "section-" + encode_name(matched + "-" +
                                               wikify_link(section))
            sectref = sectref.replace("%", "_")
            make_link(parser, LinkType.READ, matched, text, sectref, attrs)
        else:
            make_link(parser, LinkType.READ, matched, text, None, attrs)


def make_section_title(parser: MarkupParser, title: str) -> str:
    """Returns the plain text of a heading title, with markup removed."""
    title = title.strip()
    if parser.clean:
        return title
    clean = parser.get_clean_parser()
    clean.set_input(title)
    doc = clean.parse()
    return _title_text(doc.root).strip()


def _title_text(node: Union[str, WikiNode]) -> str:
    # Plugins and variables are only evaluated when rendering
    if isinstance(node, str):
        return node
    if isinstance(node, (PluginNode, VariableNode)):
        return ""
    return "".join(_title_text(x) for x in node.children)


def make_heading_anchor(parser: MarkupParser, base_name: str, title: str,
                        heading: Heading) -> str:
    """Fills in the title fields of ``heading`` and returns its anchor.
    Repeated titles get a numeric suffix."""
    heading.title_text = title
    section = encode_name(wikify_link(title))
    counter = parser.state.title_section_counter
    if section in counter:
        counter[section] += 1
        heading.title_section = "{}-{}".format(section, counter[section])
    else:
        counter[section] = 1
        heading.title_section = section
    anchor = "section-" + encode_name(base_name) + "-" + heading.title_section
    heading.title_anchor = anchor.replace("%", "_").replace("/", "_")
    return heading.title_anchor


def make_heading(parser: MarkupParser, level: HeadingLevel, title: str,
                 heading: Heading) -> WikiNode:
    out_title = make_section_title(parser, title)
    heading.level = level
    anchor = make_heading_anchor(parser, parser.page_name, out_title, heading)
    return WikiNode(HEADING_TAGS[level], {"id": anchor})


def close_headings(parser: MarkupParser) -> None:
    state = parser.state
    if state.last_heading is not None:
        _parser_add(parser, WikiNode("a", {
            "class": CLASS_HASHLINK,
            "href": "#" + state.last_heading.title_anchor}, ["#"]))
        state.last_heading = None
    _parser_pop(parser, "h2")
    _parser_pop(parser, "h3")
    _parser_pop(parser, "h4")


def _list_tag(bullet: str) -> str:
    if bullet == "*":
        return "ul"
    if bullet == "#":
        return "ol"
    raise WikiMarkupError("Parser got faulty list type: {!r}".format(bullet))


def handle_list(parser: MarkupParser) -> None:
    """Handles a line starting with list bullets (* and #, in any mix).
    Lists are opened and closed so that the open lists match the bullets
    of the line."""
    state = parser.state
    start_block_level(parser)
    bullets = _read_while(parser, "*#")
    num = len(bullets)
    prev = state.list_bullets
    level = len(prev)
    n = min(num, level)

    # PHPWiki style: only the last bullet decides the type of the list
    if parser.config.allow_phpwiki_style_lists and bullets[:n] != prev[:n]:
        if num <= level:
            bullets = prev[:num - 1] + bullets[-1]
        else:
            bullets = prev + bullets[level:]

    if bullets[:n] == prev[:n]:
        if num > level:
            _parser_push(parser, WikiNode(_list_tag(bullets[level])))
            for i in range(level + 1, num):
                _parser_push(parser, WikiNode("li"))
                _parser_push(parser, WikiNode(_list_tag(bullets[i])))
        elif num < level:
            _parser_pop(parser, "li")
            for i in range(level, num, -1):
                _parser_pop(parser, _list_tag(prev[i - 1]))
                _parser_pop(parser, "li")
        elif level > 0:
            _parser_pop(parser, "li")
    else:
        equal = 0
        while equal < n and bullets[equal] == prev[equal]:
            equal += 1
        for i in range(level, equal, -1):
            _parser_pop(parser, _list_tag(prev[i - 1]))
            if i > num:
                _parser_pop(parser, "li")
        _parser_push(parser, WikiNode(_list_tag(bullets[equal])))
        for i in range(equal + 1, num):
            _parser_push(parser, WikiNode("li"))
            _parser_push(parser, WikiNode(_list_tag(bullets[i])))

    _parser_push(parser, WikiNode("li"))
    _read_while(parser, " ")
    state.list_bullets = bullets


def unwind_lists(parser: MarkupParser) -> None:
    """Closes all open lists."""
    bullets = parser.state.list_bullets
    for i in range(len(bullets), 0, -1):
        _parser_pop(parser, "li")
        _parser_pop(parser, _list_tag(bullets[i - 1]))
    parser.state.list_bullets = ""


def newline_fn(parser: MarkupParser) -> None:
    """Processes a newline.  An empty line ends the current paragraph and
    usually starts a new one."""
    state = parser.state
    inline = state.inline
    close_headings(parser)
    _parser_pop(parser, "dl")
    if state.table_open:
        _parser_pop(parser, "tr")
    state.definition = False
    if not state.new_line:
        parser.plain_text.append("\n")
        state.new_line = True
        return

    start_block_level(parser)
    line = parser.source.peek_line()
    # Block level elements cannot be inside a paragraph
    if (not line or
            (not line.startswith(("{{{", "----", "%%")) and
             line[0] not in "*#!;")):
        _parser_push(parser, WikiNode("p"))
        state.open_paragraph = True
        if inline.restart_italic:
            _parser_push(parser, WikiNode("i"))
            inline.italic = True
            inline.restart_italic = False
        if inline.restart_bold:
            _parser_push(parser, WikiNode("b"))
            inline.bold = True
            inline.restart_bold = False


def backslash_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes \\\\ (line break) and \\\\\\ (line break clearing floats)."""
    source = parser.source
    c = source.next_char()
    if c != "\\":
        source.push_back(c)
        return False
    c2 = source.next_char()
    if c2 == "\\":
        node = WikiNode("br", {"clear": "all"})
    else:
        source.push_back(c2)
        node = WikiNode("br")
    _parser_push(parser, node)
    _parser_pop(parser, "br")
    return True


def _toggle_inline(parser: MarkupParser, tag: str, active: bool) -> None:
    if active:
        _parser_pop(parser, tag)
    else:
        _parser_push(parser, WikiNode(tag))


def underscore_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes __ (bold)."""
    c = parser.source.next_char()
    if c != "_":
        parser.source.push_back(c)
        return False
    inline = parser.state.inline
    _toggle_inline(parser, "b", inline.bold)
    inline.bold = not inline.bold
    return True


def apostrophe_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes '' (italic)."""
    c = parser.source.next_char()
    if c != "'":
        parser.source.push_back(c)
        return False
    inline = parser.state.inline
    _toggle_inline(parser, "i", inline.italic)
    inline.italic = not inline.italic
    return True


def open_brace_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes {{ (monospace) and {{{ (preformatted)."""
    source = parser.source
    c = source.next_char()
    if c != "{":
        source.push_back(c)
        return False
    c2 = source.next_char()
    if c2 != "{":
        source.push_back(c2)
        _parser_push(parser, WikiNode("tt"))
        return True
    if parser.state.new_line:
        start_block_level(parser)
        _parser_push(parser, WikiNode("pre"))
        mode = EscapeMode.PRE_BLOCK
    else:
        _parser_push(parser, WikiNode("span", {"class": CLASS_INLINE_CODE}))
        mode = EscapeMode.INLINE_CODE
    parser.state.inline.escaping = mode
    return True


def close_brace_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes }} and }}}."""
    source = parser.source
    inline = parser.state.inline
    c2 = source.next_char()
    if c2 == "}":
        c3 = source.next_char()
        if c3 == "}":
            if inline.escaping is not None:
                if inline.escaping == EscapeMode.PRE_BLOCK:
                    _parser_pop(parser, "pre")
                else:
                    _parser_pop(parser, "span")
                inline.escaping = None
            else:
                parser.plain_text.append("}}}")
            return True
        source.push_back(c3)
        if inline.escaping is None and _parser_have(parser, "tt"):
            _parser_pop(parser, "tt")
            return True
    source.push_back(c2)
    return False


def dash_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes ---- (horizontal rule) at the start of a line."""
    if not parser.state.new_line:
        return False
    source = parser.source
    dashes = _read_while(parser, "-")
    if len(dashes) < 3:
        source.push_back_str(dashes)
        return False
    start_block_level(parser)
    _parser_push(parser, WikiNode("hr"))
    _parser_pop(parser, "hr")
    return True


def bang_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes headings (!, !! and !!!) at the start of a line."""
    state = parser.state
    if not state.new_line:
        return False
    source = parser.source
    c = source.next_char()
    if c == "!":
        c2 = source.next_char()
        if c2 == "!":
            level = HeadingLevel.LARGE
        else:
            source.push_back(c2)
            level = HeadingLevel.MEDIUM
    else:
        source.push_back(c)
        level = HeadingLevel.SMALL
    title = source.peek_line()
    heading = Heading()
    node = make_heading(parser, level, title, heading)
    for fn in parser.heading_listeners:
        fn(parser.ctx, heading)
    parser.headings.append(heading)
    state.last_heading = heading
    _parser_push(parser, node)
    return True


def semicolon_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes ; (definition list term) at the start of a line."""
    state = parser.state
    if not state.new_line or state.definition:
        return False
    state.definition = True
    start_block_level(parser)
    _parser_push(parser, WikiNode("dl"))
    _parser_push(parser, WikiNode("dt"))
    return True


def colon_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes : separating a definition from its term."""
    state = parser.state
    if not state.definition:
        return False
    _parser_pop(parser, "dt")
    _parser_push(parser, WikiNode("dd"))
    state.definition = False
    return True


def open_bracket_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes [, which starts a link, a plugin invocation or other
    directive.  [[ produces a literal [."""
    source = parser.source
    pos = source.pos - 1
    parts = []
    c = source.next_char()
    if c == "[":
        parts.append(c)
        c = source.next_char()
        while c == "[":
            parts.append(c)
            c = source.next_char()
    is_plugin = c == "{"
    source.push_back(c)
    if parts:
        parser.plain_text.extend(parts)
        return True

    # Find the end of the link; plugin invocations may contain links
    nesting = 1
    c = source.next_char()
    while c is not None:
        c2 = source.next_char()
        source.push_back(c2)
        if is_plugin:
            if c == "[" and c2 == "{":
                nesting += 1
            elif nesting == 0 and c == "]" and parts[-1] == "}":
                break
            elif c == "}" and c2 == "]":
                nesting -= 1
        elif c == "]":
            break
        parts.append(c)
        c = source.next_char()

    if c is None:
        logger.debug("{}: unterminated link".format(parser.page_name))
        parser.plain_text.append("[")
        parser.plain_text.extend(parts)
        _flush_plain_text(parser, scan_links=False)
        return True

    handle_hyperlinks(parser, "".join(parts), pos)
    return True


def list_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes * and # at the start of a line."""
    if not parser.state.new_line:
        return False
    parser.source.push_back(ch)
    handle_list(parser)
    return True


def bar_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes | and || (table cells).  A bar at the start of a line
    starts a table row."""
    state = parser.state
    new_line = state.new_line
    if not state.table_open and not new_line:
        return False
    if new_line:
        if not state.table_open:
            start_block_level(parser)
            _parser_push(parser, WikiNode("table", {"class": "wikitable",
                                                    "border": "1"}))
            state.table_open = True
            state.row_num = 0
        state.row_num += 1
        attrs = {"class": "odd"} if state.row_num % 2 else {}
        _parser_push(parser, WikiNode("tr", attrs))

    source = parser.source
    c = source.next_char()
    if c == "|":
        if not new_line and _parser_pop(parser, "th") is None:
            _parser_pop(parser, "td")
        _parser_push(parser, WikiNode("th"))
    else:
        if not new_line and _parser_pop(parser, "td") is None:
            _parser_pop(parser, "th")
        _parser_push(parser, WikiNode("td"))
        source.push_back(c)
    return True


def tilde_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes ~, which makes the following markup character literal."""
    source = parser.source
    c = source.next_char()
    if c == " ":
        return True
    if c is not None and c in TILDE_ESCAPABLE:
        parser.plain_text.append(c)
        parser.plain_text.append(_read_while(parser, c))
        return True
    source.push_back(c)
    return False


def percent_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes %%(style), %%class and %%class(style), which open a span
    or a div, and %%, which closes the latest one."""
    source = parser.source
    state = parser.state
    c = source.next_char()
    if c != "%":
        source.push_back(c)
        return False

    style: Optional[str] = None
    clazz: Optional[str] = None
    c = source.next_char()
    if c == "(":
        style = _read_brace_content(parser, "(", ")")
    elif c is not None and c.isalpha():
        source.push_back(c)
        clazz = _read_until(parser, "( \t\n\r")
        # . separates class names; drop characters not valid in them
        clazz = re.sub(r"[^\s\w-]+", "", clazz.replace(".", " "))
        c = source.next_char()
        if c == "(":
            style = _read_brace_content(parser, "(", ")")
        elif c in ("\n", "\r"):
            source.push_back(c)
    else:
        source.push_back(c)
        if not state.style_stack:
            logger.debug("{}: closing a %%-block that has not been opened"
                         .format(parser.page_name))
            return True
        is_span = state.style_stack.pop()
        _parser_pop(parser, "span" if is_span else "div")
        return True

    if style is not None:
        style = html.unescape(style)
        if "javascript:" in style:
            logger.debug("Attempt to output javascript within CSS: {}"
                         .format(style))
            parser.ctx.warning("Attempt to output javascript within CSS",
                               sortid="parser/style/javascript")
            _parser_add(parser, make_error("Attempt to output javascript!"))
            return True

    # A style with text after it on the same line is a span
    line = source.peek_line()
    if line.strip():
        node = WikiNode("span")
        state.style_stack.append(True)
    else:
        start_block_level(parser)
        node = WikiNode("div")
        state.style_stack.append(False)
    if style is not None:
        node.attrs["style"] = style
    if clazz is not None:
        node.attrs["class"] = clazz
    _parser_push(parser, node)
    return True


def slash_fn(parser: MarkupParser, ch: str) -> bool:
    """Processes /%, an alternative way to close a %%-block."""
    source = parser.source
    c = source.next_char()
    source.push_back(c)
    if c == "%" and parser.state.style_stack:
        return percent_fn(parser, c)
    return False


# Mapping from character to the function that handles markup starting with
# it.  A handler returns True if it consumed the character as markup.
tokenops: Dict[str, Callable[[MarkupParser, str], bool]] = {
    "\\": backslash_fn,
    "_": underscore_fn,
    "'": apostrophe_fn,
    "{": open_brace_fn,
    "}": close_brace_fn,
    "-": dash_fn,
    "!": bang_fn,
    ";": semicolon_fn,
    ":": colon_fn,
    "[": open_bracket_fn,
    "*": list_fn,
    "#": list_fn,
    "|": bar_fn,
    "~": tilde_fn,
    "%": percent_fn,
    "/": slash_fn,
}


def parse_token(parser: MarkupParser, ch: str) -> TokenResult:
    if ch == "\r":
        return TokenResult.IGNORE
    if ch == "\n":
        newline_fn(parser)
        return TokenResult.IGNORE
    fn = tokenops.get(ch)
    if fn is not None and fn(parser, ch):
        return TokenResult.ELEMENT
    return TokenResult.CHARACTER


def _escaped_char(parser: MarkupParser, ch: str) -> None:
    """Processes a character inside {{{ }}}."""
    plain_text = parser.plain_text
    if ch == "}":
        if not close_brace_fn(parser, ch):
            plain_text.append(ch)
    elif ch == "\r":
        pass
    elif ch == "<":
        plain_text.append("&lt;")
    elif ch == ">":
        plain_text.append("&gt;")
    elif ch == "&":
        plain_text.append("&amp;")
    elif ch == "~":
        # ~}}} is a literal }}}
        braces = _read_while(parser, "}")
        if len(braces) >= 3:
            plain_text.append("}}}")
            braces = braces[3:]
        else:
            plain_text.append(ch)
        parser.source.push_back_str(braces)
    else:
        plain_text.append(ch)


def fill_buffer(parser: MarkupParser) -> None:
    """Reads the whole input and builds the tree under the root element,
    which must be the only element on the parser stack."""
    assert len(parser.parser_stack) == 1
    state = parser.state
    source = parser.source
    state.new_line = True
    while True:
        ch = source.next_char()
        if ch is None:
            break
        if state.inline.escaping is not None:
            _escaped_char(parser, ch)
            continue

        # A line not continuing a list ends all lists
        if state.new_line and ch not in "*# " and state.list_bullets:
            unwind_lists(parser)
        if state.new_line and ch != "|" and state.table_open:
            _parser_pop(parser, "table")
            state.table_open = False

        result = parse_token(parser, ch)
        if result == TokenResult.ELEMENT:
            state.new_line = False
        elif result == TokenResult.CHARACTER:
            parser.plain_text.append(ch)
            state.new_line = False

    close_all(parser)


def close_all(parser: MarkupParser) -> None:
    """Closes every element that is still open at the end of the input,
    innermost first, so that each gets its end tag."""
    state = parser.state
    close_headings(parser)
    _flush_plain_text(parser)
    stack = parser.parser_stack
    while len(stack) > 1:
        _parser_pop(parser, stack[-1].tag)
    state.list_bullets = ""
    state.table_open = False
    state.definition = False
    state.open_paragraph = False
    state.style_stack = []
    state.inline.bold = False
    state.inline.italic = False


def paragraphify(root: WikiNode) -> None:
    """Puts the content before the first block level element in a
    paragraph if the document has any paragraphs."""
    if not any(root.find_child("p")):
        return
    leading: List[Union[str, WikiNode]] = []
    for child in root.children:
        if isinstance(child, WikiNode) and child.tag in BLOCK_ELEMENTS:
            break
        leading.append(child)
    if not leading:
        return
    p = WikiNode("p", children=leading)
    text = "".join(x for x in leading if isinstance(x, str))
    if text.strip() or any(isinstance(x, WikiNode) for x in leading):
        root.children[:len(leading)] = [p]
    else:
        del root.children[:len(leading)]


def print_tree(tree: Union[str, WikiNode], indent: int = 0,
               ret_value: bool = False) -> Optional[str]:
    """Prints the parse tree for debugging purposes."""
    assert isinstance(tree, (WikiNode, str))
    assert isinstance(indent, int)
    parts = []
    if isinstance(tree, str):
        parts.append("{}{}".format(" " * indent, repr(tree)))
    else:
        if isinstance(tree, PluginNode):
            parts.append("{}PLUGIN {} {}".format(" " * indent,
                                                 tree.plugin_name,
                                                 tree.params))
        elif isinstance(tree, VariableNode):
            parts.append("{}VARIABLE {}".format(" " * indent, tree.var_name))
        else:
            parts.append("{}{}".format(" " * indent, tree.tag.upper()))
        for k, v in tree.attrs.items():
            parts.append("{}    {}={}".format(" " * indent, k, v))
        for child in tree.children:
            parts.append(print_tree(child, indent + 2, ret_value=True))
    if ret_value:
        return "\n".join(parts)
    print("\n".join(parts))
    return None
