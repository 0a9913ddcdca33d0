"""Section builders used by the report assembler."""
