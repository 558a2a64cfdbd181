"""
Document Processing Package
════════════════════════════

  strategy.py   classify(): file characteristics → extraction plan (pure)
  extractor.py  TextExtractor: runs the planned method (PyMuPDF, pypdf,
                python-docx, pandas, Textract)

Only the pure strategy layer is re-exported here; domain records import it,
so this package must stay free of storage and queue imports. Import
TextExtractor from doclib.processing.extractor.
"""

from doclib.processing.strategy import (
    ExtractionMethod,
    ExtractionPlan,
    FileCharacteristics,
    classify,
)

__all__ = ["ExtractionMethod", "ExtractionPlan", "FileCharacteristics", "classify"]
