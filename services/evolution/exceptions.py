"""
Domain Exceptions for Soul Evolution

Иерархия исключений для бизнес-логики эволюции soul.
Все исключения наследуются от BaseEvolutionException.

Gate rejections are NOT exceptions: the gate returns a typed
AdmissionResult (see proposal_gate.AdmissionResult). Losing a resolution race is
NOT an exception either: the caller receives the already-decided outcome.

Author: Soul Evolution Team
"""


class BaseEvolutionException(Exception):
    """Базовое исключение для всех ошибок эволюции"""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Сериализация в словарь для API response"""
        return {
            "error": {
                "code": self.__class__.__name__,
                "message": self.message,
                "details": self.details
            }
        }


# =============================================================================
# Lookup
# =============================================================================

class ConfigurationNotFound(BaseEvolutionException):
    """У агента нет конфигурации (bootstrap precondition)"""

    def __init__(self, agent_id: str):
        super().__init__(
            message="Agent has no soul configuration",
            details={"agent_id": agent_id}
        )


class ConfigurationAlreadyExists(BaseEvolutionException):
    """Повторный bootstrap"""

    def __init__(self, agent_id: str):
        super().__init__(
            message="Agent already has a soul configuration",
            details={"agent_id": agent_id}
        )


class ProposalNotFound(BaseEvolutionException):

    def __init__(self, proposal_id: str = None, token: str = None):
        details = {}
        if proposal_id:
            details["proposal_id"] = proposal_id
        if token:
            details["resolution_token"] = token
        super().__init__(message="Proposal does not exist", details=details)


class VersionNotFound(BaseEvolutionException):
    """Rollback на несуществующую версию (ошибка оператора)"""

    def __init__(self, agent_id: str, version: int):
        super().__init__(
            message=f"No configuration snapshot at version {version}",
            details={"agent_id": agent_id, "version": version}
        )


# =============================================================================
# Concurrency / apply
# =============================================================================

class ConcurrentModification(BaseEvolutionException):
    """Версия изменилась между чтением и записью (transient, retry)"""

    def __init__(self, agent_id: str, expected_version: int):
        super().__init__(
            message="Configuration was modified concurrently",
            details={"agent_id": agent_id, "expected_version": expected_version}
        )


class ApplyFailed(BaseEvolutionException):
    """
    Proposal approved but the configuration write did not land.

    The proposal stays `approved` (not `applied`) and shows up in the
    reconciliation query.
    """

    def __init__(self, proposal_id: str, attempts: int, error: str):
        super().__init__(
            message="Approved proposal could not be applied",
            details={
                "proposal_id": proposal_id,
                "attempts": attempts,
                "error": error
            }
        )


class UnsupportedChange(BaseEvolutionException):
    """change_kind не поддерживается для данного поля"""

    def __init__(self, target_field: str, change_kind: str, reason: str):
        super().__init__(
            message=reason,
            details={"target_field": target_field, "change_kind": change_kind}
        )


# =============================================================================
# Policy
# =============================================================================

class ProtectedFieldViolation(BaseEvolutionException):
    """Попытка изменить защищённое поле (hard stop, never retried)"""

    def __init__(self, agent_id: str, target_field: str):
        super().__init__(
            message=f"Field '{target_field}' is protected and cannot be changed by proposals",
            details={"agent_id": agent_id, "target_field": target_field}
        )


# =============================================================================
# Channels
# =============================================================================

class InvalidResolutionToken(BaseEvolutionException):
    """Токен не принадлежит этому proposal/каналу"""

    def __init__(self, proposal_id: str, via: str):
        super().__init__(
            message="Resolution token does not match this proposal and channel",
            details={"proposal_id": proposal_id, "via": via}
        )


class UnauthorizedChannel(BaseEvolutionException):
    """Команда пришла из чата, не зарегистрированного для организации агента"""

    def __init__(self, channel: str, agent_id: str):
        super().__init__(
            message="This chat is not a registered owner channel for the agent",
            details={"channel": channel, "agent_id": agent_id}
        )


class InboundParseError(BaseEvolutionException):
    """Входящее событие канала не распознано"""

    def __init__(self, channel: str, reason: str):
        super().__init__(
            message=f"Cannot parse inbound {channel} event: {reason}",
            details={"channel": channel}
        )


# =============================================================================
# HTTP Status Mapping
# =============================================================================

EXCEPTION_TO_STATUS = {
    ConfigurationNotFound: 404,
    ConfigurationAlreadyExists: 409,
    ProposalNotFound: 404,
    VersionNotFound: 404,
    ConcurrentModification: 409,
    ApplyFailed: 500,
    UnsupportedChange: 422,
    ProtectedFieldViolation: 403,
    InvalidResolutionToken: 403,
    UnauthorizedChannel: 403,
    InboundParseError: 400,
}
