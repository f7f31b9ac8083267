class RegistrarError(Exception):
    pass

class ChainError(RegistrarError):
    pass

class ChainConnectionError(ChainError):
    pass

class QueryError(ChainError):
    pass

class InvalidKeyMaterial(RegistrarError):
    pass
