#!/usr/bin/env python3
#
# Copyright (c) 2020-2022 Tatu Ylonen.  See LICENSE and https://ylonen.org

from setuptools import setup

with open("README.md", "r") as f:
    long_description = f.read()

setup(name="wikimarkup",
      version="0.1.0",
      description="Parser for JSPWiki-style wiki markup, producing an XHTML-like node tree",
      long_description=long_description,
      long_description_content_type="text/markdown",
      author="Tatu Ylonen",
      author_email="ylo@clausal.com",
      license="MIT",
      scripts=[],
      packages=["wikimarkup"],
      python_requires=">=3.8",
      install_requires=["SQLAlchemy>=2.0", "lru-dict", "requests"],
      keywords=[
          "wiki",
          "jspwiki",
          "wiki markup",
          "parser",
          "xhtml",
      ],
      classifiers=[
          "Development Status :: 3 - Alpha",
          "Intended Audience :: Developers",
          "License :: OSI Approved :: MIT License",
          "Natural Language :: English",
          "Operating System :: POSIX :: Linux",
          "Programming Language :: Python",
          "Programming Language :: Python :: 3 :: Only",
          "Topic :: Text Processing",
          "Topic :: Text Processing :: Markup :: HTML",
          ])
