"""Walk-in service queue manager.

Customers take sequential numbers per lane, staff advance/call/serve them,
and display clients follow the live state over Server-Sent Events.

See DESIGN.md for how the pieces fit together.
"""

__version__ = "1.0.0"
