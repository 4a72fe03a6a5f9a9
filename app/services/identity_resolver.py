"""
Identity resolver: badge number → directory user.

A miss is not an error; callers route it to the unregistered-employee collection.
Nothing is cached between calls since badge assignments change between runs.
"""
from typing import Optional
from sqlalchemy.orm import Session

from app.models.employee import Employee
from app.schemas.punch import NormalizedPunch, ResolvedIdentity


def find_user_by_badge(db: Session, badge_number: Optional[str], active_only: bool = False) -> Optional[Employee]:
    """Exact, case-sensitive match on the badge number."""
    if badge_number is None or badge_number == "":
        return None
    query = db.query(Employee).filter(Employee.badge_number == str(badge_number))
    if active_only:
        query = query.filter(Employee.active.is_(True))
    return query.first()


def resolve(db: Session, badge_number: Optional[str], active_only: bool = False) -> Optional[ResolvedIdentity]:
    """
    Resolve a badge to an internal identity

    Args:
        db: Database session (shared by the caller for the whole batch)
        badge_number: Badge reported by the terminal
        active_only: Ignore deactivated directory users

    Returns:
        ResolvedIdentity, or None when no (active, if requested) directory user carries this badge
    """
    employee = find_user_by_badge(db, badge_number, active_only=active_only)
    if employee is None:
        return None
    return ResolvedIdentity(
        user_id=employee.id,
        name=employee.name,
        badge_number=employee.badge_number,
        department=employee.department,
    )


def resolve_punch(db: Session, punch: NormalizedPunch) -> Optional[ResolvedIdentity]:
    return resolve(db, punch.badge_number)
