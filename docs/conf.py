import os
import sys
sys.path.insert(0, os.path.abspath(".."))

project = "my_ping"
author = "Siddhi Pandkar"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
]

autodoc_member_order = "bysource"

templates_path = ["_templates"]
exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]

html_theme = "alabaster"
latex_engine = "pdflatex"
