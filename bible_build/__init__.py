"""
Build orchestration for the Bible study web client.

Compiles the Rust client to WebAssembly, fuses it with the generated Tailwind
stylesheet and packages a static site, plus a native build of the standalone
verification binary.
"""

__version__ = "0.1.0"
