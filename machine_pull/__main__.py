from .cli import script_entry

script_entry()
