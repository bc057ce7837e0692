from app.models.user import User
from app.models.customer import Customer, Order
from app.models.segment import Segment
from app.models.campaign import Campaign, CommunicationLog
