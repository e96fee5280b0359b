from contextlib import nullcontext
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, Query
from rollout.schemas import (
    AuditEvent,
    DataIn,
    EvaluationResult,
    ExistsOut,
    FeatureOut,
    FeatureState,
    GroupMembership,
    PercentageIn,
    UsersIn,
)
from rollout.services.rollout import Rollout
from rollout.metrics import EVALS

router = APIRouter(tags=["features"])


def get_rollout(request: Request) -> Rollout:
    return request.app.state.rollout


def _mutate(request: Request, rollout: Rollout, op, *args) -> dict:
    actor = request.headers.get("X-Actor", "anonymous")
    scope = rollout.audit.with_context(actor=actor) if rollout.audit is not None else nullcontext()
    with scope:
        feature = op(*args)
    return feature.to_dict() if feature is not None else None


@router.get("/features", response_model=List[str])
def list_features(rollout: Rollout = Depends(get_rollout)):
    return rollout.features()


@router.delete("/features", status_code=204)
def clear_features(request: Request, rollout: Rollout = Depends(get_rollout)):
    _mutate(request, rollout, rollout.clear)


@router.get("/feature-states", response_model=Dict[str, bool])
def feature_states(user: Optional[str] = Query(None), rollout: Rollout = Depends(get_rollout)):
    return rollout.feature_states(user)


@router.get("/active-features", response_model=List[str])
def active_features(user: Optional[str] = Query(None), rollout: Rollout = Depends(get_rollout)):
    return rollout.active_features(user)


@router.get("/features/{name}", response_model=FeatureOut)
def get_feature(name: str, rollout: Rollout = Depends(get_rollout)):
    return rollout.get(name).to_dict()


@router.put("/features/{name}", response_model=FeatureOut)
def set_feature(name: str, payload: FeatureState, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.set, name, payload.active)


@router.delete("/features/{name}", status_code=204)
def delete_feature(name: str, request: Request, rollout: Rollout = Depends(get_rollout)):
    _mutate(request, rollout, rollout.delete, name)


@router.get("/features/{name}/exists", response_model=ExistsOut)
def feature_exists(name: str, rollout: Rollout = Depends(get_rollout)):
    return {"name": name, "exists": rollout.exists(name)}


@router.get("/features/{name}/active", response_model=EvaluationResult)
def evaluate(name: str, user: Optional[str] = Query(None), rollout: Rollout = Depends(get_rollout)):
    active = rollout.active(name, user)
    EVALS.labels(name, str(active)).inc()
    return {"name": name, "user": user, "active": active}


@router.post("/features/{name}/activate", response_model=FeatureOut)
def activate(name: str, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.activate, name)


@router.post("/features/{name}/deactivate", response_model=FeatureOut)
def deactivate(name: str, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.deactivate, name)


@router.put("/features/{name}/percentage", response_model=FeatureOut)
def activate_percentage(name: str, payload: PercentageIn, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.activate_percentage, name, payload.percentage)


@router.delete("/features/{name}/percentage", response_model=FeatureOut)
def deactivate_percentage(name: str, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.deactivate_percentage, name)


@router.post("/features/{name}/users", response_model=FeatureOut)
def activate_users(name: str, payload: UsersIn, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.activate_users, name, payload.users)


@router.put("/features/{name}/users", response_model=FeatureOut)
def set_users(name: str, payload: UsersIn, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.set_users, name, payload.users)


@router.delete("/features/{name}/users", response_model=FeatureOut)
def deactivate_users(name: str, payload: UsersIn, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.deactivate_users, name, payload.users)


@router.post("/features/{name}/users/{user}", response_model=FeatureOut)
def activate_user(name: str, user: str, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.activate_user, name, user)


@router.delete("/features/{name}/users/{user}", response_model=FeatureOut)
def deactivate_user(name: str, user: str, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.deactivate_user, name, user)


@router.post("/features/{name}/groups/{group}", response_model=FeatureOut)
def activate_group(name: str, group: str, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.activate_group, name, group)


@router.delete("/features/{name}/groups/{group}", response_model=FeatureOut)
def deactivate_group(name: str, group: str, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.deactivate_group, name, group)


@router.patch("/features/{name}/data", response_model=FeatureOut)
def set_feature_data(name: str, payload: DataIn, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.set_feature_data, name, payload.data)


@router.delete("/features/{name}/data", response_model=FeatureOut)
def clear_feature_data(name: str, request: Request, rollout: Rollout = Depends(get_rollout)):
    return _mutate(request, rollout, rollout.clear_feature_data, name)


@router.get("/features/{name}/events", response_model=List[AuditEvent])
def feature_events(name: str, limit: int = Query(50, ge=1, le=500), rollout: Rollout = Depends(get_rollout)):
    if rollout.audit is None:
        raise HTTPException(status_code=404, detail="audit log disabled")
    return rollout.audit.events(name, limit=limit)


@router.get("/groups", response_model=List[str])
def list_groups(rollout: Rollout = Depends(get_rollout)):
    return rollout.groups


@router.get("/groups/{group}/members/{user}", response_model=GroupMembership)
def group_membership(group: str, user: str, rollout: Rollout = Depends(get_rollout)):
    return {"group": group, "user": user, "member": rollout.active_in_group(group, user)}
