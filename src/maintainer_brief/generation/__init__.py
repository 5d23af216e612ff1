"""Output generation: prompts, text completion client, and the output generator."""
