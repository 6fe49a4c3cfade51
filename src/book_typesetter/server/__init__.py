"""HTTP services: the Compilation Service and the Typeset API."""
