# Tests for helper functions shared by the parser modules
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See file LICENSE and https://ylonen.org

import unittest

from wikimarkup.common import (clean_link, wikify_link, is_number,
                               is_positive, encode_name,
                               escape_html_entities, cleanup_suspect_data)


class CommonTests(unittest.TestCase):
    def test_clean_link(self):
        self.assertEqual(clean_link("hello"), "Hello")
        self.assertEqual(clean_link("  foo   bar "), "Foo bar")
        self.assertEqual(clean_link("foo!bar"), "FooBar")
        self.assertEqual(clean_link("a (b) & c"), "A (b) & c")

    def test_wikify_link(self):
        self.assertEqual(wikify_link("foo bar"), "FooBar")
        self.assertEqual(wikify_link("section one.two"), "SectionOne.two")
        self.assertEqual(wikify_link("a-b"), "AB")

    def test_is_number(self):
        self.assertTrue(is_number("12"))
        self.assertTrue(is_number("-12"))
        self.assertFalse(is_number("-"))
        self.assertFalse(is_number(""))
        self.assertFalse(is_number("1a"))

    def test_is_positive(self):
        self.assertTrue(is_positive("true"))
        self.assertTrue(is_positive(" Yes "))
        self.assertTrue(is_positive("ON"))
        self.assertTrue(is_positive(True))
        self.assertFalse(is_positive("false"))
        self.assertFalse(is_positive(None))
        self.assertFalse(is_positive("1"))

    def test_encode_name(self):
        self.assertEqual(encode_name("Test Page/Sub"), "Test+Page/Sub")
        self.assertEqual(encode_name("a&b"), "a%26b")

    def test_escape_html_entities(self):
        self.assertEqual(escape_html_entities('a & b &amp; <c> "d"'),
                         "a &amp; b &amp; &lt;c&gt; &quot;d&quot;")
        self.assertEqual(escape_html_entities("&#8364; &foo"),
                         "&#8364; &amp;foo")

    def test_cleanup_suspect_data(self):
        self.assertEqual(cleanup_suspect_data("a\x01b"), "a0x01b")
        self.assertEqual(cleanup_suspect_data("ok\ttext\n"), "ok\ttext\n")
