from fastapi import APIRouter
from courseshop.modules.billing import api as billing
from courseshop.modules.courses import api as courses

router = APIRouter()
router.include_router(billing.router, prefix="", tags=["billing"])
router.include_router(courses.router, prefix="/courses", tags=["courses"])
