"""ISO 20022 output (pain.001.001.03 renderer and secure XML builder)."""
from .pain001 import Clock, SystemClock, UUID4Factory, UUIDFactory, build_pain001, render_pain001  # noqa: F401
from .xml_builder import BuilderState, SecureXmlBuilder, secure_parse_xml  # noqa: F401
