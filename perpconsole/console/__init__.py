"""
Operator console: tokenizer, dispatcher, batch runner, REPL and history ledger.
"""
