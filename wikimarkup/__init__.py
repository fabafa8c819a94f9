from .core import WikiContext, AclEntry
from .common import (UrlKind, WikiMarkupError, PushbackOverflowError,
                     PluginError, AccessRuleError)
from .config import ParserConfig, load_properties
from .parser import (MarkupParser, WikiNode, PluginNode, VariableNode,
                     Document, Heading, HeadingLevel, print_tree)

__all__ = (
    "WikiContext",
    "AclEntry",
    "UrlKind",
    "WikiMarkupError",
    "PushbackOverflowError",
    "PluginError",
    "AccessRuleError",
    "ParserConfig",
    "load_properties",
    "MarkupParser",
    "WikiNode",
    "PluginNode",
    "VariableNode",
    "Document",
    "Heading",
    "HeadingLevel",
    "print_tree",
)
