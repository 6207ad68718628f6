# Configuration file for the Sphinx documentation builder.
import os

# -- Project information

project = "DiskAtlas"
copyright = "2026, The DiskAtlas authors"
author = "The DiskAtlas authors"

release = '0.1'
version = '0.1.0'

# -- General configuration

extensions = [
    'sphinx.ext.duration',
    'sphinx.ext.doctest',
    'sphinx.ext.intersphinx',
    'autoapi.extension',
]

intersphinx_mapping = {
    'python': ('https://docs.python.org/3/', None),
    'numpy': ('https://numpy.org/doc/stable/', None),
    'pandas': ('https://pandas.pydata.org/docs/', None),
}
intersphinx_disabled_domains = ['std']

templates_path = ['_templates']

# -- Options for HTML output

html_theme = 'sphinx_rtd_theme'

# -- Options for EPUB output
epub_show_urls = 'footnote'

# -- AutoAPI information
autoapi_dirs = [os.path.abspath('../src') + '/DiskAtlas/']
autoapi_type = "python"
autoapi_add_toctree_entry = False
autoapi_options = [
    'members',
    'undoc-members',
    'show-inheritance',
]
autoapi_python_class_content = 'both'
autoapi_member_order = 'bysource'
