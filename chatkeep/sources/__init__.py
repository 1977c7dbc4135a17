"""Provider document parsing: citation transformers and conversation extractors."""
