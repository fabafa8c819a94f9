# Tests for parsing wiki markup
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

import io
import unittest

from wikimarkup import WikiContext, WikiMarkupError, ParserConfig
from wikimarkup.common import PushbackOverflowError
from wikimarkup.parser import (WikiNode, EscapeMode, MarkupParser,
                               print_tree)


class ParserTests(unittest.TestCase):
    def setUp(self):
        self.ctx = WikiContext(base_url="/test")

    def tearDown(self):
        self.ctx.close_db_session()
        self.ctx.dispose_db_engine()

    def parse(self, text, **kwargs):
        self.ctx.start_page("testpage")
        return self.ctx.parse(text, **kwargs)

    def tohtml(self, text, expected):
        doc = self.parse(text)
        self.assertEqual(self.ctx.node_to_html(doc), expected)

    def test_empty(self):
        doc = self.parse("")
        self.assertEqual(doc.root.tag, "domroot")
        self.assertEqual(doc.root.children, [])
        self.assertEqual(doc.page_name, "testpage")
        self.assertEqual(doc.source, "")

    def test_text(self):
        doc = self.parse("This is a test")
        self.assertEqual(doc.root.children, ["This is a test"])

    def test_text_stream(self):
        self.tohtml(io.StringIO("__a__"), "<b>a</b>")

    def test_explicit_page_name(self):
        doc = self.ctx.parse("foo", page_name="Other")
        self.assertEqual(doc.page_name, "Other")

    def test_html_escaped(self):
        self.tohtml("<b>Test</b>", "&lt;b&gt;Test&lt;/b&gt;")

    def test_amp_escaped(self):
        self.tohtml("a & b", "a &amp; b")

    def test_entity_kept(self):
        self.tohtml("a &amp; b &#8364;", "a &amp; b &#8364;")

    def test_quote_escaped(self):
        self.tohtml('say "hi"', "say &quot;hi&quot;")

    def test_raw_html(self):
        self.ctx.config = ParserConfig(allow_raw_html=True)
        self.tohtml("<b>Test</b>", "<b>Test</b>")

    def test_bold(self):
        self.tohtml("This is __bold__ text", "This is <b>bold</b> text")

    def test_italic(self):
        self.tohtml("This is ''italic'' text", "This is <i>italic</i> text")

    def test_bold_italic(self):
        self.tohtml("__''both''__", "<b><i>both</i></b>")

    def test_single_underscore(self):
        self.tohtml("snake_case", "snake_case")

    def test_unclosed_bold(self):
        self.tohtml("__foo", "<b>foo</b>")

    def test_empty_bold_at_end(self):
        self.tohtml("Text __", "Text <b></b>")

    def test_empty_tt_at_end(self):
        self.tohtml("a {{", "a <tt></tt>")

    def test_empty_pre_at_end(self):
        self.tohtml("{{{", "<pre></pre>")

    def test_state_reset_at_end(self):
        parser = MarkupParser(self.ctx, "__''x", page_name="testpage")
        doc = parser.parse()
        self.assertFalse(parser.state.inline.bold)
        self.assertFalse(parser.state.inline.italic)
        self.assertEqual(self.ctx.node_to_html(doc), "<b><i>x</i></b>")

    def test_open_span_at_end(self):
        self.tohtml("%%foo x", '<span class="foo">x</span>')
        self.tohtml("%%foo", '<div class="foo"></div>')

    def test_bold_over_paragraphs(self):
        self.tohtml("__Foo\n\nBar__",
                    "<p><b>Foo\n</b></p><p><b>Bar</b></p>")

    def test_tt(self):
        self.tohtml("1{{2345}}6", "1<tt>2345</tt>6")

    def test_inline_code(self):
        self.tohtml("1{{{2345}}}6", '1<span class="inline-code">2345</span>6')

    def test_inline_code_escaped_braces(self):
        self.tohtml("1{{{{{{2345~}}}}}}6",
                    '1<span class="inline-code">{{{2345}}}</span>6')

    def test_pre_block(self):
        self.tohtml("1\n{{{ <b> }}}", "1\n<pre> &lt;b&gt; </pre>")

    def test_pre_crlf(self):
        self.tohtml("1\r\n{{{\r\nZippadii\r\n}}}",
                    "1\n<pre>\nZippadii\n</pre>")

    def test_pre_double_brace(self):
        self.tohtml("{{{\ncode.}}\n", "<pre>\ncode.}}\n</pre>")

    def test_pre_no_markup(self):
        self.tohtml("{{{__a__ [Foo]}}}", "<pre>__a__ [Foo]</pre>")

    def test_pre_escaping_state(self):
        parser = MarkupParser(self.ctx, "{{{x", page_name="testpage")
        doc = parser.parse()
        self.assertEqual(parser.state.inline.escaping, EscapeMode.PRE_BLOCK)
        self.assertEqual(self.ctx.node_to_html(doc), "<pre>x</pre>")

    def test_stray_triple_close(self):
        self.tohtml("foo }}} bar", "foo }}} bar")

    def test_stray_double_close(self):
        self.tohtml("a}}b", "a}}b")

    def test_br(self):
        self.tohtml("1\\\\2", "1<br />2")

    def test_br_clear(self):
        self.tohtml("1\\\\\\2", '1<br clear="all" />2')

    def test_single_backslash(self):
        self.tohtml("a\\b", "a\\b")

    def test_hr(self):
        self.tohtml("----", "<hr />")

    def test_hr_long(self):
        doc = self.parse("----------")
        self.assertEqual(len(list(doc.root.find_child_recursively("hr"))), 1)
        self.assertEqual(self.ctx.node_to_html(doc), "<hr />")

    def test_hr_followed(self):
        self.tohtml("----\nFoo", "<hr />\nFoo")

    def test_three_dashes(self):
        self.tohtml("---", "---")

    def test_dashes_mid_line(self):
        self.tohtml("a----", "a----")

    def test_tilde_markup(self):
        self.tohtml("~__foo", "__foo")

    def test_tilde_tilde(self):
        self.tohtml("~~", "~")

    def test_tilde_space(self):
        self.tohtml("a~ b", "ab")

    def test_tilde_literal(self):
        self.tohtml("~x", "~x")

    def test_tilde_bracket(self):
        self.tohtml("~[Foo]", "[Foo]")

    def test_paragraphs(self):
        self.tohtml("1\n\n2\n\n3", "<p>1\n</p><p>2\n</p>\n<p>3</p>")

    def test_paragraph_two(self):
        self.tohtml("Foo\n\nBar", "<p>Foo\n</p><p>Bar</p>")

    def test_paragraph_crlf_heading(self):
        self.tohtml("\r\n\r\n!Testi\r\n\r\nFoo.",
                    '<p />\n<h4 id="section-testpage-Testi">Testi'
                    '<a class="hashlink" href="#section-testpage-Testi">#</a>'
                    '</h4>\n<p>Foo.</p>')

    def test_definition(self):
        self.tohtml(";Foo:Bar", "<dl><dt>Foo</dt><dd>Bar</dd></dl>")

    def test_definition_empty_term(self):
        self.tohtml(";:Foo", "<dl><dt></dt><dd>Foo</dd></dl>")

    def test_definition_empty(self):
        self.tohtml(";:", "<dl><dt></dt><dd></dd></dl>")

    def test_definition_markup_in_dd(self):
        self.tohtml(";Bar:Foo :-) ;-) :*]",
                    "<dl><dt>Bar</dt><dd>Foo :-) ;-) :*]</dd></dl>")

    def test_definition_closed_by_newline(self):
        self.tohtml(";Foo:Bar\nText",
                    "<dl><dt>Foo</dt><dd>Bar</dd></dl>\nText")

    def test_colon_outside_definition(self):
        self.tohtml("a: b", "a: b")

    def test_div(self):
        self.tohtml("%%foo\ntest\n%%\n", '<div class="foo">\ntest\n</div>\n')

    def test_span_class(self):
        self.tohtml("%%foo test%%\n", '<span class="foo">test</span>\n')

    def test_span_style(self):
        self.tohtml("Johan %%(foo:bar;)test%%\n",
                    'Johan <span style="foo:bar;">test</span>\n')

    def test_span_class_and_style(self):
        self.tohtml("%%foo(a:b) x%%",
                    '<span style="a:b" class="foo"> x</span>')

    def test_span_two_classes(self):
        self.tohtml("%%foo.bar text%%",
                    '<span class="foo bar">text</span>')

    def test_span_subscript_tilde(self):
        self.tohtml("H2%%sub 2%%~ O", 'H2<span class="sub">2</span>O')

    def test_span_slash_close(self):
        self.tohtml("%%(a:b)x/% y", '<span style="a:b">x</span> y')

    def test_slash_literal(self):
        self.tohtml("a/b/%c", "a/b/%c")

    def test_stray_style_close(self):
        self.tohtml("a%% b", "a b")

    def test_single_percent(self):
        self.tohtml("50% off", "50% off")

    def test_style_javascript(self):
        self.tohtml("%%(javascript:alert)\nTEST",
                    '<span class="error">Attempt to output javascript!'
                    '</span>\nTEST')
        self.assertEqual(len(self.ctx.warnings), 1)

    def test_style_javascript_entity(self):
        self.tohtml("%%(java&#115;cript:x)\nT",
                    '<span class="error">Attempt to output javascript!'
                    '</span>\nT')

    def test_illegal_character(self):
        self.tohtml("a\x01b",
                    '<span class="error">Illegal character in text: a0x01b'
                    '</span>')
        self.assertEqual(len(self.ctx.warnings), 1)

    def test_unterminated_link(self):
        self.tohtml("[Foo bar", "[Foo bar")

    def test_unterminated_no_camelcase(self):
        self.ctx.config = ParserConfig(camel_case_links=True)
        self.tohtml("[FooBar", "[FooBar")

    def test_bracket_escape(self):
        self.tohtml("a [[Foo] b", "a [Foo] b")

    def test_bracket_escape_many(self):
        self.tohtml("[[[x", "[[x")

    def test_read_error(self):
        class BadStream:
            def read(self, n):
                raise OSError("disk on fire")

        with self.assertRaises(WikiMarkupError):
            self.parse(BadStream())

    def test_pushback_overflow(self):
        config = ParserConfig(pushback_size=5)
        with self.assertRaises(PushbackOverflowError):
            self.parse("!" + "x" * 20, config=config)

    def test_overflow_is_fatal_error(self):
        self.assertTrue(issubclass(PushbackOverflowError, WikiMarkupError))

    def test_parser_reuse(self):
        parser = MarkupParser(self.ctx, "__a__", page_name="testpage")
        doc1 = parser.parse()
        parser.set_input("''b''")
        doc2 = parser.parse()
        self.assertEqual(self.ctx.node_to_html(doc1), "<b>a</b>")
        self.assertEqual(self.ctx.node_to_html(doc2), "<i>b</i>")
        self.assertEqual(parser.parser_stack, [])

    def test_print_tree(self):
        doc = self.parse("__a__")
        s = print_tree(doc.root, ret_value=True)
        self.assertEqual(s, "DOMROOT\n  B\n    'a'")

    def test_wikinode_find_child(self):
        doc = self.parse("__a__ ''b'' __c__")
        bolds = list(doc.root.find_child("b"))
        self.assertEqual(len(bolds), 2)
        self.assertTrue(all(isinstance(x, WikiNode) for x in bolds))

