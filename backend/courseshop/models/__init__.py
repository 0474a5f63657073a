from courseshop.models.user import User
from courseshop.models.course import Course
from courseshop.models.billing import Purchase, Subscription
