"""Device agent library giving remote web access to terminals, commands, files and HTTP."""

__version__ = "1.1.1"