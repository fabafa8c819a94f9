# Parsing of plugin invocations such as [{INSERT Name WHERE key='value'}]
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

import re
from typing import Dict, Optional, Tuple

from .common import PluginError

# Parameter holding the argument text of the invocation
PARAM_CMDLINE = "_cmdline"
# Parameter holding the text after the first empty line, if any
PARAM_BODY = "_body"
# Parameter holding the start and end offsets of the invocation
PARAM_BOUNDS = "_bounds"

PLUGIN_INSERT_RE = re.compile(r"\{?(INSERT)?\s*([\w\._]+)[ \t]*(WHERE)?[ \t]*")

# Tokens of the argument text: end of line, quoted string, word
_arg_token_re = re.compile(r"""(\r\n|\r|\n)|'([^'\r\n]*)'?|"([^"\r\n]*)"?"""
                           r"""|([^\s'"=,]+)|[=,]|\s""")


def parse_plugin_args(argstring: str) -> Dict[str, str]:
    """Parses plugin arguments.  Alternating words are taken as parameter
    names and values; ``=`` and ``,`` are ignored.  Values may be quoted.
    An empty line ends the arguments, and the rest of the text is stored
    as the ``_body`` parameter."""
    assert isinstance(argstring, str)
    args = {PARAM_CMDLINE: argstring}
    param: Optional[str] = None
    potential_empty_line = False
    pos = 0
    while pos < len(argstring):
        m = _arg_token_re.match(argstring, pos)
        assert m is not None
        pos = m.end()
        eol, squoted, dquoted, word = m.groups()
        if eol is not None:
            if potential_empty_line:
                args[PARAM_BODY] = argstring[pos:]
                return args
            potential_empty_line = True
            continue
        if word is not None:
            potential_empty_line = False
            s = word
        elif squoted is not None:
            s = squoted
        elif dquoted is not None:
            s = dquoted
        else:
            continue
        if param is None:
            param = s
        else:
            args[param] = s
            param = None
    if potential_empty_line:
        args[PARAM_BODY] = ""
    return args


def parse_plugin_line(commandline: str,
                      pos: int = -1) -> Tuple[str, Dict[str, str]]:
    """Parses a plugin invocation (the text between the square brackets)
    into the plugin name and its arguments.  If ``pos`` is not negative,
    it is the offset of the invocation in the page and its bounds are
    added as the ``_bounds`` parameter."""
    assert isinstance(commandline, str)
    m = re.search(PLUGIN_INSERT_RE, commandline)
    if m is None:
        raise PluginError("Could not parse plugin invocation: {}"
                          .format(commandline))
    name = m.group(2)
    end = len(commandline)
    if commandline.endswith("}"):
        end -= 1
    args = parse_plugin_args(commandline[m.end():end])
    if pos >= 0:
        args[PARAM_BOUNDS] = "{}|{}".format(pos, pos + len(commandline) + 2)
    return name, args
