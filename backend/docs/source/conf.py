import pathlib
import sys

BACKEND_ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.insert(0, str(BACKEND_ROOT))

project = 'Feature Store API'
copyright = '2025, Mihovil Rak'
author = 'Mihovil Rak'
release = '0.1.0'

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.autosummary',
    'sphinx.ext.intersphinx',
    'sphinx.ext.napoleon',
    'sphinx.ext.viewcode',
    'sphinx_autodoc_typehints',
    'myst_parser',
]

source_suffix = {
    '.rst': 'restructuredtext',
    '.md': 'markdown',
}
templates_path = ['_templates']
exclude_patterns = ['.venv', 'venv', '.pytest_cache', '.mypy_cache']

# Services are documented from their Google style docstrings, including the
# Raises sections that list the error codes returned by the API.
napoleon_google_docstring = True
napoleon_numpy_docstring = False
napoleon_include_private_with_doc = False
napoleon_use_param = True

autosummary_generate = True
autodoc_member_order = 'bysource'
autodoc_default_options = {
    'members': True,
    'show-inheritance': True,
}
typehints_fully_qualified = False
always_document_param_types = True

# Database drivers and GIS bindings are not needed to render the docs.
autodoc_mock_imports = [
    'psycopg2',
    'pyproj',
    'shapefile',
    'shapely',
]

intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
    'pyproj': ('https://pyproj4.github.io/pyproj/stable', None),
    'shapely': ('https://shapely.readthedocs.io/en/stable', None),
}

html_theme = 'sphinx_rtd_theme'
html_static_path = ['_static']
html_theme_options = {
    'prev_next_buttons_location': 'bottom',
    'navigation_depth': 3,
}
