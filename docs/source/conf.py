# Sphinx configuration for the pymetapool API reference.
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import os
import sys

sys.path.insert(0, os.path.abspath("../.."))

project = "pymetapool"
copyright = "2026, pymetapool developers"
author = "pymetapool developers"
release = "0.0.1"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",  # Google-style Args/Returns/Raises sections
    "sphinx.ext.intersphinx",
    "myst_parser",
]

source_suffix = {".md": "markdown", ".rst": "restructuredtext"}
myst_enable_extensions = ["colon_fence"]

napoleon_google_docstring = True
napoleon_numpy_docstring = False
autodoc_member_order = "bysource"
autodoc_typehints = "description"

# The Bayesian engine is optional; build the reference without PyMC installed.
autodoc_mock_imports = ["pymc", "arviz", "pytensor"]

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "pyarrow": ("https://arrow.apache.org/docs/", None),
    "pandas": ("https://pandas.pydata.org/docs/", None),
    "pymc": ("https://www.pymc.io/projects/docs/en/stable/", None),
}

templates_path = []
exclude_patterns = []

html_theme = "furo"
html_title = "pymetapool"
html_show_sphinx = False
