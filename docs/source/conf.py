# Configuration file for the Sphinx documentation builder.
#
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import os
import sys

# Make torch_sqm importable without installation
sys.path.insert(0, os.path.abspath('../..'))

# -- Project information -----------------------------------------------------
project = 'torch_sqm'
copyright = '2026, Stefano Giacomelli'
author = 'Stefano Giacomelli'
release = '0.1.0'
version = '0.1.0'

# -- General configuration ---------------------------------------------------
extensions = [
    'sphinx.ext.autodoc',           # API pages from docstrings
    'sphinx.ext.napoleon',          # NumPy-style docstrings
    'sphinx.ext.viewcode',          # Links to highlighted source
    'sphinx.ext.intersphinx',       # Cross-project links
    'sphinx.ext.mathjax',           # LaTeX equations in docstrings
    'sphinx_autodoc_typehints',     # Type hints in parameter lists
    'myst_parser',                  # Markdown pages
]

# Napoleon: NumPy style only
napoleon_google_docstring = False
napoleon_numpy_docstring = True
napoleon_include_init_with_doc = True
napoleon_include_special_with_doc = True
napoleon_use_param = True
napoleon_use_rtype = True
napoleon_attr_annotations = True
napoleon_custom_sections = [('Shape', 'params_style'),
                            ('Algorithm Overview', 'notes_style'),
                            ('Processing Stages', 'notes_style')]

autodoc_default_options = {
    'members': True,
    'member-order': 'bysource',
    'special-members': '__init__',
    'undoc-members': True,
    'exclude-members': '__weakref__',
}
autodoc_typehints = 'description'
autodoc_typehints_description_target = 'documented'

source_suffix = {
    '.rst': 'restructuredtext',
    '.md': 'markdown',
}
master_doc = 'index'

# -- Options for HTML output -------------------------------------------------
html_theme = 'sphinx_rtd_theme'
html_static_path = []
html_title = f'{project} v{version}'

# -- Extension configuration -------------------------------------------------
intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
    'torch': ('https://pytorch.org/docs/stable/', None),
    'torchaudio': ('https://pytorch.org/audio/stable/', None),
    'numpy': ('https://numpy.org/doc/stable/', None),
    'scipy': ('https://docs.scipy.org/doc/scipy/', None),
}

mathjax_path = 'https://cdn.jsdelivr.net/npm/mathjax@3/es5/tex-mml-chtml.js'

always_document_param_types = True
typehints_fully_qualified = False
