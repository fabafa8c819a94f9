# Tests for converting parse trees to HTML and text
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

import unittest

from wikimarkup import WikiContext
from wikimarkup.node_expand import to_attrs, to_html, to_text
from wikimarkup.parser import WikiNode


class NodeExpTests(unittest.TestCase):
    def setUp(self):
        self.ctx = WikiContext(base_url="/test")
        self.ctx.add_page("Hello", "text")

    def tearDown(self):
        self.ctx.close_db_session()
        self.ctx.dispose_db_engine()

    def tohtml(self, text, expected):
        self.ctx.start_page("testpage")
        root = self.ctx.parse(text)
        self.assertEqual(self.ctx.errors, [])
        self.assertEqual(self.ctx.warnings, [])
        t = self.ctx.node_to_html(root)
        self.assertEqual(t, expected)

    def totext(self, text, expected):
        self.ctx.start_page("testpage")
        root = self.ctx.parse(text)
        self.assertEqual(self.ctx.errors, [])
        self.assertEqual(self.ctx.warnings, [])
        t = self.ctx.node_to_text(root)
        self.assertEqual(t, expected)

    def test_attrs(self):
        node = WikiNode("a", {"href": "x?a=1&b=2", "title": 'say "hi"'})
        self.assertEqual(to_attrs(node),
                         'href="x?a=1&amp;b=2" title="say &quot;hi&quot;"')

    def test_empty_attr_value(self):
        node = WikiNode("img", {"alt": ""})
        self.assertEqual(to_html(self.ctx, node), '<img alt="" />')

    def test_empty_element(self):
        self.assertEqual(to_html(self.ctx, WikiNode("dd")), "<dd />")

    def test_element_with_empty_text(self):
        self.assertEqual(to_html(self.ctx, WikiNode("dt", children=[""])),
                         "<dt></dt>")

    def test_nested(self):
        node = WikiNode("p", children=["a", WikiNode("b", children=["c"])])
        self.assertEqual(to_html(self.ctx, node), "<p>a<b>c</b></p>")

    def test_list_of_nodes(self):
        self.assertEqual(to_html(self.ctx, ["a", WikiNode("br")]),
                         "a<br />")

    def test_invalid_node(self):
        with self.assertRaises(RuntimeError):
            to_html(self.ctx, 5)

    def test_html(self):
        self.tohtml("__a__ [Hello]",
                    '<b>a</b> <a class="wikipage" href="/test/wiki/Hello">'
                    "Hello</a>")

    def test_text(self):
        self.totext("__Hello__ &amp; [Hello]", "Hello & Hello")

    def test_text_escaped(self):
        self.totext("a < b", "a < b")

    def test_text_keep_entities(self):
        self.ctx.start_page("testpage")
        doc = self.ctx.parse("a < b")
        self.assertEqual(to_text(self.ctx, doc.root, unescape=False),
                         "a &lt; b")

    def test_text_plugin(self):
        self.ctx.register_plugin("Bold", lambda ctx, params: "<b>x</b>")
        self.totext("a [{Bold}] b", "a x b")

    def test_text_variable(self):
        self.totext("Page [{$pagename}]", "Page testpage")
