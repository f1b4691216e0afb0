"""
Hybrid parsing pipeline: direct text extraction or page-level OCR, per document.

Modules
-------
config           – Pipeline settings (modes, parallelism, timeouts, cache, tables)
schemas          – Pydantic models: StructuredDocument, Page, LayoutElement, ParsingResult
tables           – Markdown table helpers (parse, render, header lookup, row append)
text_quality     – Quality gate for directly extracted text
table_detection  – Tabular-signal heuristics over the PDF text layer
pdf_parser       – Page rendering & per-page text layer (PyMuPDF)
extractors       – Direct text extractors (PDF, DOCX, plain text)
ocr              – OCR provider contract, failover facade, EasyOCR provider
vision           – Vision-model OCR provider with JSON repair and simplified retry
timeouts         – Sliding-window adaptive timeout model
cache            – Per-page OCR result cache keyed by document fingerprint
scheduler        – Bounded-parallel page OCR with retry rounds and deadlines
table_merge      – Cross-page table splicing
evaluation       – Accuracy, TEDS, compression and OCR quality metrics
pipeline         – HybridDocumentParser wiring everything together
"""
