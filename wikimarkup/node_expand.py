# Expanding parse tree nodes to HTML or plain text
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

import re
import html
from typing import TYPE_CHECKING, Union

from .common import escape_html_entities
from .parser import WikiNode, PluginNode, VariableNode, make_error

if TYPE_CHECKING:
    from .core import WikiContext

_tag_re = re.compile(r"<[^>]*>")


def _escape_attr(v: str) -> str:
    return (v.replace("&", "&amp;").replace("<", "&lt;")
            .replace(">", "&gt;").replace('"', "&quot;"))


def to_attrs(node: WikiNode) -> str:
    parts = []
    for k, v in node.attrs.items():
        parts.append('{}="{}"'.format(k, _escape_attr(str(v))))
    return " ".join(parts)


def _variable_value(ctx: "WikiContext",
                    node: VariableNode) -> Union[str, WikiNode]:
    value = ctx.get_variable(node.var_name)
    if value is None:
        ctx.warning("No such variable: {}".format(node.var_name),
                    sortid="node_expand/variable")
        return make_error("No such variable: {}".format(node.var_name))
    return value


def to_html(ctx: "WikiContext", node) -> str:
    """Converts a parse tree (or subtree) to XHTML.  Plugins and variables
    are evaluated when they are encountered.  The root element of a
    document is not included in the output."""

    def recurse(node):
        if isinstance(node, str):
            return node
        if isinstance(node, (list, tuple)):
            return "".join(map(recurse, node))
        if not isinstance(node, WikiNode):
            raise RuntimeError("invalid WikiNode: {}".format(node))

        if isinstance(node, PluginNode):
            return ctx.invoke_plugin(node)
        if isinstance(node, VariableNode):
            value = _variable_value(ctx, node)
            if isinstance(value, WikiNode):
                return recurse(value)
            if ctx.config.allow_raw_html:
                return value
            return escape_html_entities(value)
        if node.tag == "domroot":
            return recurse(node.children)

        attrs = to_attrs(node)
        start = "<" + node.tag + (" " + attrs if attrs else "")
        if not node.children:
            return start + " />"
        return "{}>{}</{}>".format(start, recurse(node.children), node.tag)

    return recurse(node)


def to_text(ctx: "WikiContext", node, unescape: bool = True) -> str:
    """Returns the text content of a parse tree (or subtree).  If
    ``unescape`` is True, HTML entities in the text are decoded."""

    def recurse(node):
        if isinstance(node, str):
            return node
        if isinstance(node, (list, tuple)):
            return "".join(map(recurse, node))
        if isinstance(node, PluginNode):
            return re.sub(_tag_re, "", ctx.invoke_plugin(node))
        if isinstance(node, VariableNode):
            return recurse(_variable_value(ctx, node))
        if not isinstance(node, WikiNode):
            raise RuntimeError("invalid WikiNode: {}".format(node))
        return recurse(node.children)

    text = recurse(node)
    if unescape:
        text = html.unescape(text)
    return text
