from decimal import Decimal

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Candidate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("party_name", models.CharField(blank=True, default="", max_length=100)),
                ("party_symbol", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ("name", "id"),
            },
        ),
        migrations.CreateModel(
            name="Voter",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("username", models.CharField(max_length=150, unique=True)),
                ("full_name", models.CharField(blank=True, default="", max_length=255)),
                ("email", models.EmailField(max_length=254, unique=True)),
                (
                    "card_number",
                    models.CharField(
                        max_length=10,
                        unique=True,
                        validators=[
                            django.core.validators.RegexValidator(
                                "^[A-Z]{3}\\d{7}$",
                                "Election card number must be 3 uppercase letters followed by 7 digits.",
                            )
                        ],
                    ),
                ),
                ("state", models.CharField(blank=True, default="", max_length=50)),
                ("district", models.CharField(blank=True, default="", max_length=50)),
                ("city", models.CharField(blank=True, default="", max_length=100)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ("username", "id"),
                "indexes": [models.Index(fields=["state", "district"], name="voter_state_district")],
            },
        ),
        migrations.CreateModel(
            name="ChallengeCode",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("identity", models.CharField(max_length=254)),
                (
                    "purpose",
                    models.CharField(
                        choices=[
                            ("registration", "Registration"),
                            ("login", "Login"),
                            ("password_reset", "Password reset"),
                        ],
                        max_length=32,
                    ),
                ),
                ("code", models.CharField(max_length=6)),
                ("attempts", models.PositiveSmallIntegerField(default=0)),
                ("is_used", models.BooleanField(default=False)),
                ("expires_at", models.DateTimeField(db_index=True)),
                ("last_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ("-created_at", "-id"),
                "indexes": [models.Index(fields=["identity", "purpose"], name="challenge_identity_purpose")],
            },
        ),
        migrations.CreateModel(
            name="Election",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=200)),
                ("description", models.TextField(blank=True, default="", max_length=1000)),
                (
                    "level",
                    models.CharField(
                        choices=[
                            ("national", "National"),
                            ("state", "State"),
                            ("district", "District"),
                            ("municipal", "Municipal"),
                            ("village", "Village"),
                            ("block", "Block"),
                        ],
                        default="national",
                        max_length=16,
                    ),
                ),
                ("state", models.CharField(blank=True, default="", max_length=50)),
                ("district", models.CharField(blank=True, default="", max_length=50)),
                ("city", models.CharField(blank=True, default="", max_length=100)),
                ("voting_start", models.DateTimeField()),
                ("voting_end", models.DateTimeField()),
                ("result_declaration_at", models.DateTimeField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("upcoming", "Upcoming"),
                            ("active", "Active"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                            ("postponed", "Postponed"),
                        ],
                        db_index=True,
                        default="draft",
                        max_length=16,
                    ),
                ),
                ("archived", models.BooleanField(default=False)),
                ("is_secret_ballot", models.BooleanField(default=True)),
                ("total_voters", models.PositiveIntegerField(default=0)),
                ("total_votes_cast", models.PositiveIntegerField(default=0)),
                ("turnout_percentage", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=5)),
                ("results_declared", models.BooleanField(default=False)),
                ("results_declared_at", models.DateTimeField(blank=True, null=True)),
                ("winner_votes", models.PositiveIntegerField(default=0)),
                ("winner_percentage", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=5)),
                ("winner_is_tie", models.BooleanField(default=False)),
                ("created_by", models.CharField(blank=True, default="", max_length=150)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "winner",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="won_elections",
                        to="voting.candidate",
                    ),
                ),
            ],
            options={
                "ordering": ("-voting_start", "id"),
                "indexes": [
                    models.Index(fields=["status", "voting_start"], name="election_status_start"),
                    models.Index(fields=["status", "voting_end"], name="election_status_end"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("voting_start__lt", models.F("voting_end"))),
                        name="chk_election_start_before_end",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("result_declaration_at__gte", models.F("voting_end"))),
                        name="chk_election_declaration_after_end",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AuditLogEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("timestamp", models.DateTimeField(auto_now_add=True)),
                ("event_type", models.CharField(max_length=64)),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("is_public", models.BooleanField(default=False)),
                (
                    "election",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="audit_log",
                        to="voting.election",
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "Audit log entries",
                "ordering": ("timestamp", "id"),
                "indexes": [models.Index(fields=["election", "timestamp"], name="audit_el_ts")],
            },
        ),
        migrations.CreateModel(
            name="ElectionCandidate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("position", models.PositiveSmallIntegerField(default=0)),
                ("vote_count", models.PositiveIntegerField(default=0)),
                ("vote_percentage", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=5)),
                (
                    "candidate",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="election_entries",
                        to="voting.candidate",
                    ),
                ),
                (
                    "election",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="candidate_entries",
                        to="voting.election",
                    ),
                ),
            ],
            options={
                "ordering": ("position", "id"),
                "constraints": [
                    models.UniqueConstraint(
                        fields=("election", "candidate"),
                        name="uniq_electioncandidate_election_candidate",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="Vote",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("cast_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "view_count",
                    models.PositiveSmallIntegerField(
                        default=0,
                        validators=[django.core.validators.MaxValueValidator(2)],
                    ),
                ),
                ("last_viewed_at", models.DateTimeField(blank=True, null=True)),
                ("ip_address", models.GenericIPAddressField(blank=True, null=True)),
                (
                    "candidate",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="votes",
                        to="voting.candidate",
                    ),
                ),
                (
                    "election",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="votes",
                        to="voting.election",
                    ),
                ),
                (
                    "voter",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="votes",
                        to="voting.voter",
                    ),
                ),
            ],
            options={
                "indexes": [models.Index(fields=["election", "candidate"], name="vote_el_cand")],
                "constraints": [
                    models.UniqueConstraint(fields=("election", "voter"), name="uniq_vote_election_voter"),
                    models.CheckConstraint(condition=models.Q(("view_count__lte", 2)), name="chk_vote_view_count_max"),
                ],
            },
        ),
    ]
