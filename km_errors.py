# km_errors.py - erreurs du stockage kilometrage


class KmError(Exception):
    status_code = 500


class ValidationError(KmError):
    """Entree invalide, rejetee avant tout acces au FTP."""

    status_code = 400

    def __init__(self, message: str, code: str = "invalid"):
        super().__init__(message)
        self.message = message
        self.code = code


class TransportError(KmError):
    """Echec reseau / auth / timeout sur le FTP (fatal pour l'operation)."""

    status_code = 502


class ConfigurationError(KmError):
    status_code = 503
