# Definition of the context for parsing wiki markup.  The context holds
# the configuration, the page and attachment database, and the plugins,
# variables, access rules and hooks used while parsing pages.
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

import re
import logging
import tempfile
import traceback
import urllib.parse
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import (Callable, DefaultDict, Dict, List, Optional, TextIO,
                    Tuple, Union)

from lru import LRU
from sqlalchemy import ScalarResult, create_engine, func, select
from sqlalchemy.orm import Session

from .common import UrlKind, PluginError, AccessRuleError
from .config import ParserConfig
from .db_models import Attachment, Base, Page
from .interwiki import get_interwiki_url
from .links import is_plugin_link, is_variable_link
from .logging_utils import logger
from .node_expand import to_html, to_text
from .parser import (Document, Heading, MarkupParser, PluginNode, WikiNode,
                     make_error)
from .plugins import PARAM_BOUNDS, PARAM_CMDLINE, parse_plugin_line

PluginFn = Callable[["WikiContext", Dict[str, str]], str]

# URL templates for each kind of URL.  {base_url} is replaced by the base
# URL and %s by the encoded page or file name.
DEFAULT_URL_PATTERNS = {
    UrlKind.VIEW: "{base_url}/wiki/%s",
    UrlKind.EDIT: "{base_url}/edit/%s",
    UrlKind.ATTACH: "{base_url}/attach/%s",
    UrlKind.INFO: "{base_url}/info/%s",
    UrlKind.NONE: "{base_url}/%s",
}

# Actions that access rules may allow or deny
ACL_ACTIONS = set(["view", "comment", "edit", "modify", "upload", "rename",
                   "delete"])

_acl_re = re.compile(r"(ALLOW|DENY)\s+(\w+)\s+(.*)$", re.DOTALL)
_variable_ref_re = re.compile(r"\[\{\$\s*([\w.]+)\s*\}\]")


@dataclass
class AclEntry:
    """An access rule given on a page with [{ALLOW ...}] or [{DENY ...}]."""
    allow: bool
    action: str
    principals: Tuple[str, ...]


class WikiContext:
    """Context used for parsing wiki markup.  The intended usage pattern is
    to create the context once, add the pages (or at least their names) and
    attachments of the wiki, and then call start_page() and parse() for
    each page to be processed."""
    __slots__ = (
        "db_path",	 # Database path
        "db_engine",	 # Database engine
        "db_session",	 # Database session
        "config",	 # ParserConfig used by default
        "base_url",	 # Base URL of the wiki, without trailing slash
        "url_patterns",  # UrlKind -> URL template
        "quiet",	 # If True, don't log debug messages
        "title",	 # Current page title
        "errors",	 # List of error messages (cleared for each new page)
        "warnings",	 # List of warning messages (cleared for each new page)
        "debugs",	 # List of debug messages (cleared for each new page)
        "plugins",	 # Plugin name -> function
        "variables",	 # Variables set with set_variable()
        "page_attributes",  # Page name -> attributes set with [{SET}]
        "acls",	 # Page name -> list of AclEntry
        "resolve_cache",  # Cache for page_exists_and_resolve()
        "link_mutators",
        "local_link_mutators",
        "external_link_mutators",
        "attachment_link_mutators",
        "heading_listeners",
    )

    def __init__(self, db_path: Optional[Union[str, Path]] = None,
                 config: Optional[ParserConfig] = None,
                 base_url: str = "", quiet: bool = False,
                 url_patterns: Optional[Dict[UrlKind, str]] = None) -> None:
        assert config is None or isinstance(config, ParserConfig)
        assert isinstance(base_url, str)
        self.db_path = Path(db_path) if db_path is not None else None
        self.config = config if config is not None else ParserConfig()
        self.base_url = base_url.rstrip("/")
        self.url_patterns = dict(DEFAULT_URL_PATTERNS)
        if url_patterns is not None:
            self.url_patterns.update(url_patterns)
        self.quiet = quiet
        self.title: Optional[str] = None
        self.errors: List[Dict] = []
        self.warnings: List[Dict] = []
        self.debugs: List[Dict] = []
        self.plugins: Dict[str, PluginFn] = {}
        self.variables: Dict[str, str] = {}
        self.page_attributes: DefaultDict[str, Dict[str, str]] = \
            defaultdict(dict)
        self.acls: DefaultDict[str, List[AclEntry]] = defaultdict(list)
        self.resolve_cache = LRU(1000)
        self.link_mutators: List[Callable] = []
        self.local_link_mutators: List[Callable] = []
        self.external_link_mutators: List[Callable] = []
        self.attachment_link_mutators: List[Callable] = []
        self.heading_listeners: List[Callable] = []
        self.create_db()
        if not quiet:
            logger.setLevel(logging.DEBUG)

    def create_db(self) -> None:
        if self.db_path is None:
            temp_file = tempfile.NamedTemporaryFile(prefix="wikimarkup_tempdb",
                                                    delete=False)
            self.db_path = Path(temp_file.name)
            temp_file.close()

        self.db_engine = create_engine(f"sqlite:///{self.db_path.absolute()}")
        Base.metadata.create_all(self.db_engine)
        self.db_session = Session(self.db_engine)

    def close_db_session(self) -> None:
        self.db_session.close()

    def dispose_db_engine(self) -> None:
        self.db_engine.dispose()
        if self.db_path.parent.samefile(Path(tempfile.gettempdir())):
            for path in self.db_path.parent.glob(self.db_path.name + "*"):
                # also remove SQLite -wal and -shm file
                path.unlink(True)

    def _fmt_errmsg(self, kind: str, msg: str, trace: Optional[str]) -> None:
        assert isinstance(kind, str)
        assert isinstance(msg, str)
        assert isinstance(trace, (str, type(None)))
        loc = self.title or "NO_TITLE"
        if trace:
            msg += "\n" + trace
        line = "{}: {}: {}".format(loc, kind, msg)
        if kind == "ERROR":
            logger.error(line)
        elif kind == "WARNING":
            logger.warning(line)
        else:
            logger.debug(line)

    def error(self, msg: str, trace: Optional[str] = None,
              sortid="XYZunsorted") -> None:
        """Logs an error message.  The error is also saved in
        self.errors."""
        assert isinstance(msg, str)
        assert isinstance(trace, (str, type(None)))
        assert isinstance(sortid, str)
        # sortid should be a static string only used to sort
        # error messages into buckets based on where they
        # have been called.
        self.errors.append({"msg": msg, "trace": trace,
                            "title": self.title,
                            "called_from": sortid})
        self._fmt_errmsg("ERROR", msg, trace)

    def warning(self, msg: str, trace: Optional[str] = None,
                sortid="XYZunsorted") -> None:
        """Logs a warning message.  The warning is also saved in
        self.warnings."""
        assert isinstance(msg, str)
        assert isinstance(trace, (str, type(None)))
        assert isinstance(sortid, str)

        self.warnings.append({"msg": msg, "trace": trace,
                              "title": self.title,
                              "called_from": sortid})
        self._fmt_errmsg("WARNING", msg, trace)

    def debug(self, msg: str, trace: Optional[str] = None,
              sortid="XYZunsorted") -> None:
        """Logs a debug message.  The message is also saved in
        self.debugs."""
        assert isinstance(msg, str)
        assert isinstance(trace, (str, type(None)))
        assert isinstance(sortid, str)

        self.debugs.append({"msg": msg, "trace": trace,
                            "title": self.title,
                            "called_from": sortid})
        self._fmt_errmsg("DEBUG", msg, trace)

    def to_return(self) -> Dict[str, List[Dict]]:
        """Returns a dictionary with errors, warnings, and debug messages
        from the context.  Note that the values are reset whenever starting
        processing a new page.  The value returned by this function is
        JSON-compatible."""
        return {
            "errors": self.errors,
            "warnings": self.warnings,
            "debugs": self.debugs,
        }

    def start_page(self, title: str) -> None:
        """Starts a new page.  This saves the title in the context and
        clears self.errors, self.warnings, and self.debugs.  Calling this
        is mandatory before parsing a page without an explicit page
        name."""
        assert isinstance(title, str)
        self.title = title
        self.errors = []
        self.warnings = []
        self.debugs = []

    def add_page(self, title: str, body: Optional[str] = None) -> None:
        """Saves the page in the database, replacing any earlier version."""
        from sqlalchemy.dialects.sqlite import insert

        assert isinstance(title, str)
        assert isinstance(body, (str, type(None)))
        stmt = insert(Page).values([{"title": title, "body": body}])
        stmt = stmt.on_conflict_do_update(index_elements=[Page.title],
                                          set_={"body": body})
        self.db_session.execute(stmt)
        self.db_session.commit()
        self.resolve_cache.clear()

    def get_page(self, title: str) -> Optional[Page]:
        return self.db_session.scalar(select(Page).where(Page.title == title))

    def page_exists(self, title: str) -> bool:
        return self.get_page(title) is not None

    def get_all_pages(self) -> ScalarResult[Page]:
        return self.db_session.scalars(select(Page))

    def saved_page_nums(self) -> int:
        return self.db_session.query(func.count()).select_from(Page).scalar()

    def read_by_title(self, title: str) -> Optional[str]:
        """Reads the contents of the page.  Returns None if the page does
        not exist."""
        page = self.get_page(title)
        return page.body if page is not None else None

    def page_exists_and_resolve(self, name: str,
                                plurals: Optional[bool] = None
                                ) -> Optional[str]:
        """Returns the name of the existing page that ``name`` refers to,
        or None if there is no such page.  If English plurals are matched,
        Foos finds Foo and vice versa.  ``plurals`` defaults to
        match_english_plurals of the context's configuration."""
        if plurals is None:
            plurals = self.config.match_english_plurals
        key = (name, plurals)
        if key in self.resolve_cache:
            return self.resolve_cache[key]
        candidates = [name]
        if plurals:
            if name.endswith("s"):
                candidates.append(name[:-1])
            else:
                candidates.append(name + "s")
        ret = None
        for candidate in candidates:
            if candidate and self.page_exists(candidate):
                ret = candidate
                break
        self.resolve_cache[key] = ret
        return ret

    def add_attachment(self, page: str, name: str) -> None:
        """Registers an attachment named ``name`` on page ``page``."""
        from sqlalchemy.dialects.sqlite import insert

        assert isinstance(page, str)
        assert isinstance(name, str)
        stmt = insert(Attachment).values([{"page": page, "name": name}])
        stmt = stmt.on_conflict_do_nothing()
        self.db_session.execute(stmt)
        self.db_session.commit()

    def find_attachment(self, link: str,
                        page_name: Optional[str] = None) -> Optional[str]:
        """Returns the full name (Page/file) of the attachment the link
        refers to, or None if there is no such attachment.  A link
        without a slash refers to an attachment of the current page."""
        if page_name is None:
            page_name = self.title
        idx = link.rfind("/")
        if idx >= 0:
            page, name = link[:idx], link[idx + 1:]
        elif page_name is not None:
            page, name = page_name, link
        else:
            return None
        att = self.db_session.scalar(select(Attachment)
                                     .where(Attachment.page == page)
                                     .where(Attachment.name == name))
        if att is None:
            return None
        return "{}/{}".format(att.page, att.name)

    def resolve_interwiki(self, prefix: str) -> Optional[str]:
        """Returns the URL template for an interwiki prefix, with %s where
        the page name goes."""
        return get_interwiki_url(self, prefix)

    def register_plugin(self, name: str, fn: PluginFn) -> None:
        """Registers a plugin.  The function is called with the context and
        the parameters of the invocation, and returns HTML."""
        assert isinstance(name, str)
        assert callable(fn)
        self.plugins[name] = fn

    def is_plugin_invocation(self, text: str) -> bool:
        return is_plugin_link(text)

    def execute_plugin(self, text: str, pos: int = -1) -> PluginNode:
        """Parses a plugin invocation and returns a node that runs the
        plugin when the tree is rendered.  Raises PluginError if the
        invocation is malformed or the plugin does not exist."""
        name, params = parse_plugin_line(text, pos)
        if name not in self.plugins:
            raise PluginError("Plugin {!r} not found".format(name))
        return PluginNode(name, params, text)

    def invoke_plugin(self, node: PluginNode) -> str:
        """Runs the plugin of the node and returns the HTML it produces.
        A failing plugin produces an error message instead."""
        params = {}
        for k, v in node.params.items():
            if k not in (PARAM_CMDLINE, PARAM_BOUNDS):
                v = self.expand_variables(v)
            params[k] = v
        fn = self.plugins.get(node.plugin_name)
        if fn is None:
            msg = "Plugin {!r} not found".format(node.plugin_name)
            self.error(msg, sortid="core/invoke_plugin/missing")
            return to_html(self, make_error(msg))
        try:
            ret = fn(self, params)
        except Exception as e:
            lst = traceback.format_exception(type(e), value=e,
                                             tb=e.__traceback__)
            msg = "Plugin {} failed: {}".format(node.plugin_name, e)
            self.error(msg, trace="".join(lst),
                       sortid="core/invoke_plugin/exception")
            return to_html(self, make_error(msg))
        return ret if ret is not None else ""

    def set_variable(self, name: str, value: str) -> None:
        assert isinstance(name, str)
        assert isinstance(value, str)
        self.variables[name.lower()] = value

    def get_variable(self, name: str) -> Optional[str]:
        """Returns the value of a variable, or None if it is not defined.
        Names are case-insensitive."""
        key = name.lower()
        if key == "pagename":
            return self.title
        if key == "baseurl":
            return self.base_url
        if key == "totalpages":
            return str(self.saved_page_nums())
        if key in self.variables:
            return self.variables[key]
        if self.title is not None:
            for k, v in self.page_attributes.get(self.title, {}).items():
                if k.lower() == key:
                    return v
        return None

    def is_variable_reference(self, text: str) -> bool:
        return is_variable_link(text)

    def expand_variables(self, text: str) -> str:
        """Replaces [{$name}] in the text by the value of the variable.
        References to undefined variables are left as they are."""
        def repl(m):
            value = self.get_variable(m.group(1))
            return value if value is not None else m.group(0)

        return re.sub(_variable_ref_re, repl, text)

    def set_page_attribute(self, page_name: str, name: str,
                           value: str) -> None:
        self.page_attributes[page_name][name] = value

    def get_page_attribute(self, page_name: str,
                           name: str) -> Optional[str]:
        return self.page_attributes.get(page_name, {}).get(name)

    def apply_access_rule(self, rule: str,
                          page_name: Optional[str] = None) -> AclEntry:
        """Parses an access rule such as ``ALLOW edit Alice, Bob`` and
        stores it for the page.  Raises AccessRuleError if the rule is
        malformed."""
        if page_name is None:
            page_name = self.title
        m = re.match(_acl_re, rule.strip())
        if m is None:
            raise AccessRuleError("Invalid access rule: {}".format(rule))
        action = m.group(2).lower()
        if action not in ACL_ACTIONS:
            raise AccessRuleError("Invalid access rule: unknown action {!r}"
                                  .format(m.group(2)))
        principals = tuple(x.strip() for x in m.group(3).split(",")
                           if x.strip())
        if not principals:
            raise AccessRuleError("Invalid access rule: no principals in {}"
                                  .format(rule))
        entry = AclEntry(m.group(1) == "ALLOW", action, principals)
        self.acls[page_name].append(entry)
        return entry

    def get_acl(self, page_name: str) -> List[AclEntry]:
        return list(self.acls.get(page_name, ()))

    def build_url(self, kind: UrlKind, page_name: str,
                  fragment: str = "") -> str:
        """Returns the URL of the given kind for a page or file name."""
        assert isinstance(kind, UrlKind)
        pattern = self.url_patterns[kind]
        name = urllib.parse.quote(page_name, safe="/")
        url = pattern.replace("{base_url}", self.base_url).replace("%s", name)
        if fragment:
            url += "#" + fragment
        return url

    def add_link_transmutator(self, fn: Callable[["WikiContext", str], str]
                              ) -> None:
        self.link_mutators.append(fn)

    def add_local_link_hook(self, fn: Callable[["WikiContext", str], str]
                            ) -> None:
        self.local_link_mutators.append(fn)

    def add_external_link_hook(self, fn: Callable[["WikiContext", str], str]
                               ) -> None:
        self.external_link_mutators.append(fn)

    def add_attachment_link_hook(self,
                                 fn: Callable[["WikiContext", str], str]
                                 ) -> None:
        self.attachment_link_mutators.append(fn)

    def add_heading_listener(self,
                             fn: Callable[["WikiContext", Heading], None]
                             ) -> None:
        self.heading_listeners.append(fn)

    def parse(self, text: Union[str, TextIO], page_name: Optional[str] = None,
              config: Optional[ParserConfig] = None) -> Document:
        """Parses wiki markup into a Document.  The page name defaults to
        the title given to start_page().  Raises WikiMarkupError if the
        input cannot be read."""
        assert isinstance(text, str) or hasattr(text, "read")
        parser = MarkupParser(self, text, page_name=page_name, config=config)
        return parser.parse()

    def node_to_html(self, node: Union[str, WikiNode, Document]) -> str:
        """Converts the given parse tree node to HTML."""
        if isinstance(node, Document):
            node = node.root
        return to_html(self, node)

    def node_to_text(self, node: Union[str, WikiNode, Document]) -> str:
        """Converts the given parse tree node to plain text."""
        if isinstance(node, Document):
            node = node.root
        return to_text(self, node)
