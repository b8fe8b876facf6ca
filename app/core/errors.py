# app/core/errors.py
#
# Errores tipados del núcleo. El núcleo no sabe nada de HTTP: main.py traduce
# cada tipo a un status code.


class LightpostError(Exception):
    """Base de todos los errores del núcleo."""


# --- Pool de sesiones / nodos ---

class NodeError(LightpostError):
    pass


class NodeConnectionError(NodeError):
    """No se pudo alcanzar el nodo (red, TLS o timeout del handshake)."""


class AuthError(NodeError):
    """El nodo rechazó el macaroon."""


class SessionNotFound(NodeError):
    """Token desconocido o imposible de reconstruir. Hace falta un nuevo connect."""

    def __init__(self, token: str, reason: str = "token desconocido"):
        super().__init__(f"Sesión no encontrada: {reason}")
        self.token = token
        self.reason = reason


class UpstreamError(NodeError):
    """Fallo de una llamada remota con la sesión ya establecida."""

    def __init__(self, message: str, timeout: bool = False):
        super().__init__(message)
        self.timeout = timeout


class InvalidAmount(NodeError):
    def __init__(self, amount):
        super().__init__(f"El monto debe ser un entero positivo, recibido: {amount!r}")
        self.amount = amount


class InvalidPaymentHash(NodeError):
    """El hash no decodifica a 32 bytes."""


# --- Invoice gate ---

class GateError(LightpostError):
    pass


class MissingProof(GateError):
    def __init__(self):
        super().__init__("Hash is required")


class ActionNotFound(GateError):
    def __init__(self, action_id: str):
        super().__init__(f"No hay invoice para la acción {action_id}")
        self.action_id = action_id


class InvoiceMismatch(GateError):
    """El hash presentado no pertenece a la acción."""

    def __init__(self, action_id: str):
        super().__init__(f"El hash no corresponde a la acción {action_id}")
        self.action_id = action_id


class PaymentNotSettled(GateError):
    """Resultado esperado: el cliente puede reintentar más tarde."""

    def __init__(self, action_id: str):
        super().__init__("The payment has not been paid yet")
        self.action_id = action_id


class NodeUnavailable(GateError):
    def __init__(self, action_id: str):
        super().__init__(f"Nodo no disponible para la acción {action_id}")
        self.action_id = action_id
