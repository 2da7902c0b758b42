"""issues_api/lambda_function.py

Lambda service for CRUD operations on issues.

Routes (via API Gateway proxy):
    GET     /issues              List issues (cursor paginated)
    POST    /issues              Create an issue
    GET     /issues/{id}         Get a single issue
    PUT     /issues/{id}         Update status/priority/assignee and other fields
    DELETE  /issues/{id}         Delete an issue (idempotent, always 204)
    OPTIONS /issues[/{id}]       CORS preflight

Successful responses carry the bare issue payload (or {items, nextToken});
errors carry the shared {success, error, message} envelope.

Auth:
    Optional ``Authorization: Bearer <access token>``. When present it must be
    valid; the caller's userId then becomes the default reporter.

Query parameters (GET /issues):
    limit       page size, 1..MAX_PAGE_SIZE (default: DEFAULT_PAGE_SIZE)
    nextToken   cursor returned by the previous page
    status      OPEN | IN_PROGRESS | RESOLVED | CLOSED

Environment variables:
    STORAGE_BACKEND        memory | file | dynamodb (default: memory)
    ISSUES_TABLE           default: Issues
    JWT_SECRET             token signing secret
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from issue_tracker_shared import config
from issue_tracker_shared.auth import _extract_bearer_token, _get_token_issuer
from issue_tracker_shared.errors import NotFoundError, ValidationError
from issue_tracker_shared.http_utils import _no_content, _parse_body, _response
from issue_tracker_shared.repositories import _get_issue_repository
from issue_tracker_shared.routing import Route, Router
from issue_tracker_shared.serialization import _now_z

_MAX_TITLE_LENGTH = 200
_MAX_DESCRIPTION_LENGTH = 10_000
_MAX_TAGS = 20

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(config.LOG_LEVEL)

# ---------------------------------------------------------------------------
# Collaborators (module-level for container reuse)
# ---------------------------------------------------------------------------


def _get_issues():
    return _get_issue_repository()


def _get_issuer():
    return _get_token_issuer()


def _caller_claims(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Verified access-token claims, or None when no bearer token was sent."""
    token = _extract_bearer_token(event)
    if not token:
        return None
    return _get_issuer().verify_access(token)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_enum(value: Any, allowed, field: str, errors: List[str]) -> Optional[str]:
    if value not in allowed:
        errors.append(f"{field} must be one of {', '.join(allowed)}")
        return None
    return value


def _validate_tags(value: Any, errors: List[str]) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(t, str) for t in value):
        errors.append("tags must be a list of strings")
        return []
    tags: List[str] = []
    for tag in value:
        tag = tag.strip()
        if tag and tag not in tags:
            tags.append(tag)
    if len(tags) > _MAX_TAGS:
        errors.append(f"tags: at most {_MAX_TAGS} allowed")
    return tags


def _validate_title(value: Any, errors: List[str]) -> str:
    title = value.strip() if isinstance(value, str) else ""
    if not title:
        errors.append("Title is required")
    elif len(title) > _MAX_TITLE_LENGTH:
        errors.append(f"Title exceeds {_MAX_TITLE_LENGTH} characters")
    return title


def _validate_description(value: Any, errors: List[str]) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        errors.append("Description must be a string")
        return ""
    if len(value) > _MAX_DESCRIPTION_LENGTH:
        errors.append(f"Description exceeds {_MAX_DESCRIPTION_LENGTH} characters")
    return value.strip()


def _validate_assignee(value: Any, errors: List[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        errors.append("Assignee must be a string or null")
        return None
    return value.strip() or None


def _validate_create_input(body: Dict[str, Any]) -> Dict[str, Any]:
    errors: List[str] = []
    data = {
        "title": _validate_title(body.get("title"), errors),
        "description": _validate_description(body.get("description"), errors),
        "status": _validate_enum(body.get("status") or "OPEN", config.ISSUE_STATUSES, "Status", errors),
        "priority": _validate_enum(
            body.get("priority") or "MEDIUM", config.ISSUE_PRIORITIES, "Priority", errors
        ),
        "assignee": _validate_assignee(body.get("assignee"), errors),
        "tags": _validate_tags(body.get("tags"), errors),
    }
    reporter = body.get("reporter")
    data["reporter"] = reporter.strip() if isinstance(reporter, str) and reporter.strip() else None
    if errors:
        raise ValidationError(", ".join(errors))
    return data


def _validate_update_input(body: Dict[str, Any]) -> Dict[str, Any]:
    """Return only the fields present in ``body``, validated."""
    errors: List[str] = []
    changes: Dict[str, Any] = {}
    if "title" in body:
        changes["title"] = _validate_title(body["title"], errors)
    if "description" in body:
        changes["description"] = _validate_description(body["description"], errors)
    if "status" in body:
        changes["status"] = _validate_enum(body["status"], config.ISSUE_STATUSES, "Status", errors)
    if "priority" in body:
        changes["priority"] = _validate_enum(
            body["priority"], config.ISSUE_PRIORITIES, "Priority", errors
        )
    if "assignee" in body:
        changes["assignee"] = _validate_assignee(body["assignee"], errors)
    if "tags" in body:
        changes["tags"] = _validate_tags(body["tags"], errors)
    if errors:
        raise ValidationError(", ".join(errors))
    return changes


def _parse_limit(raw: Optional[str]) -> int:
    if raw in (None, ""):
        return config.DEFAULT_PAGE_SIZE
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("limit must be an integer")
    if limit < 1 or limit > config.MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {config.MAX_PAGE_SIZE}")
    return limit


# ---------------------------------------------------------------------------
# GET /issues
# ---------------------------------------------------------------------------


def _handle_list(event: Dict[str, Any], _params: Dict[str, str]) -> Dict[str, Any]:
    _caller_claims(event)
    qs = event.get("queryStringParameters") or {}
    limit = _parse_limit(qs.get("limit"))
    status = qs.get("status") or None
    if status is not None and status not in config.ISSUE_STATUSES:
        raise ValidationError(f"Status must be one of {', '.join(config.ISSUE_STATUSES)}")

    items, next_token = _get_issues().list(
        limit=limit,
        next_token=qs.get("nextToken") or None,
        status=status,
    )
    return _response(200, {"items": items, "nextToken": next_token})


# ---------------------------------------------------------------------------
# POST /issues
# ---------------------------------------------------------------------------


def _handle_create(event: Dict[str, Any], _params: Dict[str, str]) -> Dict[str, Any]:
    claims = _caller_claims(event)
    data = _validate_create_input(_parse_body(event))

    now = _now_z()
    reporter = (claims or {}).get("userId") or data["reporter"] or "anonymous"
    issue = {
        "issueId": str(uuid.uuid4()),
        "title": data["title"],
        "description": data["description"],
        "status": data["status"],
        "priority": data["priority"],
        "assignee": data["assignee"],
        "reporter": reporter,
        "tags": data["tags"],
        "createdAt": now,
        "updatedAt": now,
    }
    _get_issues().insert(issue)
    logger.info("issue created: %s (priority=%s)", issue["issueId"], issue["priority"])
    return _response(201, issue)


# ---------------------------------------------------------------------------
# GET /issues/{id}
# ---------------------------------------------------------------------------


def _handle_get(event: Dict[str, Any], params: Dict[str, str]) -> Dict[str, Any]:
    _caller_claims(event)
    issue_id = params["id"]
    issue = _get_issues().get(issue_id)
    if issue is None:
        raise NotFoundError(f"Issue '{issue_id}' not found")
    return _response(200, issue)


# ---------------------------------------------------------------------------
# PUT /issues/{id}
# ---------------------------------------------------------------------------


def _handle_update(event: Dict[str, Any], params: Dict[str, str]) -> Dict[str, Any]:
    _caller_claims(event)
    issue_id = params["id"]
    changes = _validate_update_input(_parse_body(event))

    issues = _get_issues()
    issue = issues.get(issue_id)
    if issue is None:
        raise NotFoundError(f"Issue '{issue_id}' not found")

    issue.update(changes)
    issue["updatedAt"] = _now_z()
    issues.update(issue)
    logger.info("issue updated: %s fields=%s", issue_id, sorted(changes))
    return _response(200, issue)


# ---------------------------------------------------------------------------
# DELETE /issues/{id}
# ---------------------------------------------------------------------------


def _handle_delete(event: Dict[str, Any], params: Dict[str, str]) -> Dict[str, Any]:
    _caller_claims(event)
    issue_id = params["id"]
    if _get_issues().delete(issue_id):
        logger.info("issue deleted: %s", issue_id)
    return _no_content()


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------

ROUTES = [
    Route("GET", "/issues", _handle_list),
    Route("POST", "/issues", _handle_create),
    Route("GET", "/issues/{id}", _handle_get),
    Route("PUT", "/issues/{id}", _handle_update),
    Route("DELETE", "/issues/{id}", _handle_delete),
]

ROUTER = Router(ROUTES, component="issues_api", not_found_message="Not Found")


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    return ROUTER.dispatch(event, context)
