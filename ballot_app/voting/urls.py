from django.urls import path

from voting import views_api

urlpatterns = [
    path("auth/csrf", views_api.auth_csrf, name="api-auth-csrf"),
    path("auth/challenge", views_api.auth_challenge, name="api-auth-challenge"),
    path("auth/verify", views_api.auth_verify, name="api-auth-verify"),
    path("voting/request-credential", views_api.request_credential, name="api-request-credential"),
    path("voting/verify-credential", views_api.verify_credential, name="api-verify-credential"),
    path("voting/cast-vote", views_api.cast_vote, name="api-cast-vote"),
    path("voting/status/<int:election_id>", views_api.vote_status, name="api-vote-status"),
    path("voting/view-vote/<int:election_id>", views_api.view_vote, name="api-view-vote"),
    path("elections/available", views_api.available_elections, name="api-elections-available"),
    path("elections/published", views_api.published_elections, name="api-elections-published"),
    path("elections/archived", views_api.archived_election_list, name="api-elections-archived"),
    path("elections/", views_api.election_list, name="api-elections"),
    path("elections/create", views_api.election_create, name="api-election-create"),
    path("elections/<int:election_id>/update", views_api.election_update, name="api-election-update"),
    path("elections/<int:election_id>/delete", views_api.election_delete, name="api-election-delete"),
    path("elections/<int:election_id>/candidates", views_api.candidate_assign, name="api-candidate-assign"),
    path(
        "elections/<int:election_id>/candidates/<int:candidate_id>/remove",
        views_api.candidate_remove,
        name="api-candidate-remove",
    ),
    path("elections/<int:election_id>/results", views_api.election_results, name="api-election-results"),
    path("elections/<int:election_id>/results-public", views_api.public_results, name="api-results-public"),
    path("elections/<int:election_id>/publish-results", views_api.publish_results, name="api-publish-results"),
    path("elections/<int:election_id>/reconcile", views_api.reconcile_tally, name="api-reconcile"),
    path(
        "elections/<int:election_id>/<slug:action>",
        views_api.election_action,
        name="api-election-action",
    ),
]
