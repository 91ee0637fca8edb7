"""AI conversation pipeline: attachments, search, prompt assembly and streaming."""
