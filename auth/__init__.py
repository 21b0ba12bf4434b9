"""auth/ -- Session, access-control, and identity package for SmartVal.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or projects/.
api/ imports from auth/, not the other way around.
"""
