from uuid import UUID

from fastapi import APIRouter, Depends, Query

from courseshop.api.deps import get_billing_store
from courseshop.schemas.billing import CourseAccessOut
from courseshop.services.billing_store import BillingStore

router = APIRouter()


@router.get("/{course_id}/access", response_model=CourseAccessOut)
def course_access(course_id: UUID, user_id: UUID = Query(...), store: BillingStore = Depends(get_billing_store)):
    access = store.find_user_access(user_id, course_id)
    return CourseAccessOut(course_id=course_id, user_id=user_id, has_access=access.has_access)
