# Tests for plugins, variables, metadata and access rules in pages
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

import unittest

from wikimarkup import (WikiContext, ParserConfig, PluginNode, VariableNode,
                        PluginError, AclEntry)
from wikimarkup.plugins import parse_plugin_args, parse_plugin_line


def hello_plugin(ctx, params):
    return "<b>hi {}</b>".format(params.get("name", ""))


def failing_plugin(ctx, params):
    raise ValueError("boom")


class PluginLineTests(unittest.TestCase):
    def test_simple(self):
        name, args = parse_plugin_line("{Hello name='World'}")
        self.assertEqual(name, "Hello")
        self.assertEqual(args["name"], "World")
        self.assertEqual(args["_cmdline"], "name='World'")

    def test_insert_where(self):
        name, args = parse_plugin_line("{INSERT Hello WHERE name=World}")
        self.assertEqual(name, "Hello")
        self.assertEqual(args["name"], "World")

    def test_bounds(self):
        name, args = parse_plugin_line("{Hello name='World'}", 0)
        self.assertEqual(args["_bounds"], "0|22")

    def test_body(self):
        name, args = parse_plugin_line("{Hello\n\nbody text}")
        self.assertEqual(args["_body"], "body text")

    def test_args(self):
        args = parse_plugin_args("a=1, b=\"two words\" c='x'")
        self.assertEqual(args["a"], "1")
        self.assertEqual(args["b"], "two words")
        self.assertEqual(args["c"], "x")

    def test_malformed(self):
        with self.assertRaises(PluginError):
            parse_plugin_line("{}")


class PluginTests(unittest.TestCase):
    def setUp(self):
        self.ctx = WikiContext(base_url="/test")
        self.ctx.register_plugin("Hello", hello_plugin)
        self.ctx.register_plugin("Fail", failing_plugin)

    def tearDown(self):
        self.ctx.close_db_session()
        self.ctx.dispose_db_engine()

    def parse(self, text, **kwargs):
        self.ctx.start_page("testpage")
        return self.ctx.parse(text, **kwargs)

    def tohtml(self, text, expected):
        doc = self.parse(text)
        self.assertEqual(self.ctx.node_to_html(doc), expected)

    def test_plugin_node(self):
        doc = self.parse("[{Hello name='World'}]")
        self.assertEqual(len(doc.root.children), 1)
        node = doc.root.children[0]
        self.assertIsInstance(node, PluginNode)
        self.assertEqual(node.plugin_name, "Hello")
        self.assertEqual(node.params["_bounds"], "0|22")

    def test_plugin_html(self):
        self.tohtml("a [{Hello name='World'}] b", "a <b>hi World</b> b")

    def test_plugin_insert(self):
        self.tohtml("[{INSERT Hello WHERE name=World}]", "<b>hi World</b>")

    def test_plugin_variable_param(self):
        self.tohtml("[{Hello name='[{$pagename}]'}]", "<b>hi testpage</b>")

    def test_unknown_plugin(self):
        self.tohtml("[{Nope}]",
                    '<span class="error">Plugin insertion failed: '
                    "Plugin 'Nope' not found</span>")
        self.assertEqual(len(self.ctx.warnings), 1)

    def test_failing_plugin(self):
        self.tohtml("[{Fail}]",
                    '<span class="error">Plugin Fail failed: boom</span>')
        self.assertEqual(len(self.ctx.errors), 1)
        self.assertIn("ValueError", self.ctx.errors[0]["trace"])

    def test_is_plugin_invocation(self):
        self.assertTrue(self.ctx.is_plugin_invocation("{Hello}"))
        self.assertFalse(self.ctx.is_plugin_invocation("{$foo}"))

    def test_variable_node(self):
        doc = self.parse("[{$pagename}]")
        node = doc.root.children[0]
        self.assertIsInstance(node, VariableNode)
        self.assertEqual(node.var_name, "pagename")
        self.assertEqual(self.ctx.node_to_html(doc), "testpage")

    def test_variable_baseurl(self):
        self.tohtml("[{$baseurl}]", "/test")

    def test_variable_set(self):
        self.ctx.set_variable("Greeting", "<hi>")
        self.tohtml("[{$greeting}]", "&lt;hi&gt;")

    def test_variable_unknown(self):
        self.tohtml("[{$nope}]",
                    '<span class="error">No such variable: nope</span>')
        self.assertEqual(len(self.ctx.warnings), 1)

    def test_expand_variables(self):
        self.ctx.start_page("testpage")
        self.assertEqual(self.ctx.expand_variables("x [{$pagename}] y"),
                         "x testpage y")
        self.assertEqual(self.ctx.expand_variables("[{$nope}]"), "[{$nope}]")

    def test_set(self):
        doc = self.parse("[{SET foo='bar'}]")
        self.assertEqual(doc.metadata, {"foo": "bar"})
        self.assertEqual(self.ctx.get_page_attribute("testpage", "foo"),
                         "bar")
        self.assertEqual(self.ctx.node_to_html(doc), "")

    def test_set_then_variable(self):
        self.tohtml("[{SET foo='bar'}][{$foo}]", "bar")

    def test_set_expands_variables(self):
        doc = self.parse("[{SET me='[{$pagename}]'}]")
        self.assertEqual(doc.metadata["me"], "testpage")

    def test_invalid_set(self):
        self.tohtml("[{SET foo}]",
                    '<span class="error">Invalid SET found: {SET foo}</span>')

    def test_acl(self):
        doc = self.parse("[{ALLOW edit Alice, Bob}]")
        self.assertEqual(self.ctx.node_to_html(doc), "")
        self.assertEqual(self.ctx.get_acl("testpage"),
                         [AclEntry(True, "edit", ("Alice", "Bob"))])

    def test_acl_deny(self):
        self.parse("[{DENY view Guest}]")
        entry = self.ctx.get_acl("testpage")[0]
        self.assertFalse(entry.allow)
        self.assertEqual(entry.action, "view")

    def test_acl_invalid(self):
        self.tohtml("[{DENY fly Alice}]",
                    '<span class="error">Invalid access rule: unknown action '
                    "'fly'</span>")
        self.assertEqual(self.ctx.get_acl("testpage"), [])

    def test_acl_disabled(self):
        config = ParserConfig(parse_access_rules=False)
        doc = self.parse("[{ALLOW edit Alice}]", config=config)
        self.assertEqual(self.ctx.node_to_html(doc), "")
        self.assertEqual(self.ctx.get_acl("testpage"), [])
