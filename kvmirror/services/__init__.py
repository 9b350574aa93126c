"""
Services

- config - namespace watch/sync engine
- database - pooled connection facade
"""
