"""OCPP 2.1 action catalog.

2.1 keeps the 2.0.1 message set for everything the simulator does.  The
handlers are shared; payloads are checked against the 2.1 schemas bundled
with ``ocpp``, which accept the fields 2.1 added.
"""

from .ocpp_handlers import OcppVersion, register_catalog
from .v201 import build_catalog

catalog = register_catalog(build_catalog(OcppVersion.OCPP_2_1))
