"""MaterialFlow — document-to-record extraction pipeline.

Uploaded documents (PDFs, or zip archives of PDFs) are turned into
structured records by a language model in several resilient stages:

  1. Page-batched PDF extraction
  2. Tolerant response parsing / JSON repair
  3. Sequential agent post-processing
  4. Agent reliability diagnostics
  5. Supplier catalogue matching (separate pass over accepted records)
"""
