import datetime

from django.apps import AppConfig
from django.conf import settings
from django.core.cache import caches


class VotingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "voting"

    def ready(self) -> None:
        from voting.notifications import Notifier
        from voting.voting_credentials import VotingCredentialBroker

        self.credential_broker = VotingCredentialBroker(
            cache=caches[settings.VOTING_CREDENTIAL_CACHE_ALIAS],
            notifier=Notifier(),
            ttl=datetime.timedelta(seconds=settings.VOTING_CREDENTIAL_TTL_SECONDS),
            length=settings.VOTING_CREDENTIAL_LENGTH,
            max_attempts=settings.VOTING_CREDENTIAL_MAX_ATTEMPTS,
        )


def credential_broker():
    from django.apps import apps

    return apps.get_app_config("voting").credential_broker
