from datetime import datetime, date
import uuid

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import (
    Column, Integer, String, DateTime, JSON, Text, Boolean, Float, ForeignKey, UniqueConstraint, inspect
)
from sqlalchemy.orm import relationship

db = SQLAlchemy()


def new_id() -> str:
    return str(uuid.uuid4())


def _serialize(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class SerializerMixin:
    """Column-by-column JSON view of a row"""

    def to_dict(self):
        return {attr.columns[0].name: _serialize(getattr(self, attr.key))
                for attr in inspect(self).mapper.column_attrs}


# Accounts

class Profile(SerializerMixin, db.Model):
    __tablename__ = 'profiles'

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False, index=True)
    full_name = Column(String(255))
    first_name = Column(String(100))
    username = Column(String(30), unique=True, index=True)
    last_username_change = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class UserRole(SerializerMixin, db.Model):
    __tablename__ = 'user_roles'
    __table_args__ = (UniqueConstraint('user_id', 'role'),)

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    role = Column(String(20), nullable=False)  # admin, moderator, user


class UsernameHistory(SerializerMixin, db.Model):
    __tablename__ = 'username_history'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey('profiles.id'), nullable=False)
    old_username = Column(String(30), nullable=False, index=True)
    new_username = Column(String(30), nullable=False)
    changed_at = Column(DateTime, default=datetime.utcnow)


# Catalogue

class Course(SerializerMixin, db.Model):
    __tablename__ = 'courses'

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True)
    is_published = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CourseEnrollment(SerializerMixin, db.Model):
    __tablename__ = 'course_enrollments'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    course_id = Column(String(36), ForeignKey('courses.id'), nullable=False)
    enrollment_type = Column(String(30), default='purchase')
    is_active = Column(Boolean, default=True)
    enrolled_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MediaArtist(SerializerMixin, db.Model):
    __tablename__ = 'media_artists'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    slug = Column(String(255))
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Product(SerializerMixin, db.Model):
    __tablename__ = 'products'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    product_type = Column(String(30), nullable=False)  # course, subscription, membership, digital
    course_id = Column(String(36), ForeignKey('courses.id'))
    base_price_usd = Column(Float, default=0)
    billing_interval = Column(String(20))
    is_active = Column(Boolean, default=True)
    purchase_tag_id = Column(String(36))
    refund_remove_tag = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def is_subscription_like(self) -> bool:
        return self.product_type in ('subscription', 'membership')


class SubscriptionItem(SerializerMixin, db.Model):
    """A course or product bundled into a subscription product"""
    __tablename__ = 'subscription_items'

    id = Column(String(36), primary_key=True, default=new_id)
    subscription_product_id = Column(String(36), ForeignKey('products.id'), nullable=False, index=True)
    item_id = Column(String(36), nullable=False)
    item_type = Column(String(20), nullable=False)  # course, product


# Billing

class Subscription(SerializerMixin, db.Model):
    __tablename__ = 'subscriptions'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), index=True)
    product_id = Column(String(36), ForeignKey('products.id'), nullable=False)
    product_name = Column(String(255))
    customer_email = Column(String(255))
    customer_name = Column(String(255))
    status = Column(String(30), default='active')
    payment_provider = Column(String(20), nullable=False)  # stripe, paypal
    provider_subscription_id = Column(String(255))
    amount = Column(Float, nullable=False, default=0)
    currency = Column(String(3), default='USD')
    interval = Column(String(20))
    current_period_start = Column(DateTime)
    current_period_end = Column(DateTime)
    trial_end = Column(DateTime)
    cancels_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    paused_at = Column(DateTime)
    coupon_code = Column(String(100))
    coupon_discount = Column(Float)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship('Product')


class Order(SerializerMixin, db.Model):
    """A one-off or first subscription payment"""
    __tablename__ = 'orders'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), index=True)
    product_id = Column(String(36), ForeignKey('products.id'))
    subscription_id = Column(String(36), ForeignKey('subscriptions.id'))
    email = Column(String(255))
    status = Column(String(30), nullable=False, default='completed')  # completed, refunded, partial_refund
    payment_provider = Column(String(20), nullable=False)
    provider_payment_id = Column(String(255))
    amount = Column(Float, nullable=False, default=0)
    currency = Column(String(3), default='USD')
    refund_amount = Column(Float)
    refund_reason = Column(Text)
    provider_refund_id = Column(String(255))
    refunded_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    product = relationship('Product')


class Coupon(SerializerMixin, db.Model):
    __tablename__ = 'coupons'

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String(100), nullable=False, unique=True)
    name = Column(String(255))
    description = Column(Text)
    discount_type = Column(String(20), nullable=False)  # percentage, fixed
    percent_off = Column(Float)
    amount_off = Column(Float)
    currency = Column(String(3))
    duration = Column(String(20), nullable=False, default='once')  # once, repeating, forever
    duration_in_months = Column(Integer)
    is_active = Column(Boolean, default=True)
    valid_from = Column(DateTime)
    valid_until = Column(DateTime)
    max_redemptions = Column(Integer)
    times_redeemed = Column(Integer, default=0)
    applies_to_products = Column(JSON)
    applies_to_subscriptions = Column(Boolean, default=True)
    applies_to_one_time = Column(Boolean, default=True)
    stripe_coupon_id = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Referral(SerializerMixin, db.Model):
    __tablename__ = 'referrals'

    id = Column(String(36), primary_key=True, default=new_id)
    referrer_id = Column(String(36), nullable=False, index=True)
    referred_user_id = Column(String(36), index=True)
    referral_code = Column(String(50), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default='clicked')  # clicked, signed_up, converted, expired
    signed_up_at = Column(DateTime)
    converted_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class UserCredit(SerializerMixin, db.Model):
    __tablename__ = 'user_credits'

    user_id = Column(String(36), primary_key=True)
    balance = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CreditTransaction(SerializerMixin, db.Model):
    __tablename__ = 'credit_transactions'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    type = Column(String(30), nullable=False)  # earned_referral, spent_checkout, bonus, refund
    description = Column(Text)
    reference_id = Column(String(255), index=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# Email CRM

class EmailContact(SerializerMixin, db.Model):
    __tablename__ = 'email_contacts'

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False, unique=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    user_id = Column(String(36))
    source = Column(String(100))
    is_subscribed = Column(Boolean, nullable=False, default=True)
    subscribed_at = Column(DateTime, default=datetime.utcnow)
    unsubscribed_at = Column(DateTime)
    unsubscribe_reason = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class EmailList(SerializerMixin, db.Model):
    __tablename__ = 'email_lists'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


class EmailListMember(SerializerMixin, db.Model):
    __tablename__ = 'email_list_members'
    __table_args__ = (UniqueConstraint('list_id', 'contact_id'),)

    id = Column(String(36), primary_key=True, default=new_id)
    list_id = Column(String(36), ForeignKey('email_lists.id'), nullable=False, index=True)
    contact_id = Column(String(36), ForeignKey('email_contacts.id'), nullable=False)
    joined_at = Column(DateTime, default=datetime.utcnow)

    contact = relationship('EmailContact')


class EmailTag(SerializerMixin, db.Model):
    __tablename__ = 'email_tags'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


class UserTag(SerializerMixin, db.Model):
    """A tag attached to a platform user or a bare email address"""
    __tablename__ = 'user_tags'

    id = Column(String(36), primary_key=True, default=new_id)
    tag_id = Column(String(36), ForeignKey('email_tags.id'), nullable=False, index=True)
    user_id = Column(String(36), index=True)
    email = Column(String(255), index=True)
    source = Column(String(50), nullable=False, default='manual')
    source_id = Column(String(36))
    assigned_at = Column(DateTime, default=datetime.utcnow)


class EmailCampaign(SerializerMixin, db.Model):
    __tablename__ = 'email_campaigns'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    body_html = Column(Text, nullable=False)
    body_text = Column(Text)
    status = Column(String(20), nullable=False, default='draft')
    send_to_all = Column(Boolean, default=False)
    send_to_lists = Column(JSON)
    include_tags = Column(JSON)
    exclude_tags = Column(JSON)
    scheduled_at = Column(DateTime)
    sent_at = Column(DateTime)
    total_recipients = Column(Integer, default=0)
    sent_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class EmailSendLog(SerializerMixin, db.Model):
    __tablename__ = 'email_send_log'

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False, index=True)
    subject = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)  # sent, failed
    error_message = Column(Text)
    campaign_id = Column(String(36), index=True)
    enrollment_id = Column(String(36))
    step_id = Column(String(36))
    template_id = Column(String(36))
    sent_at = Column(DateTime, default=datetime.utcnow)


class OptinForm(SerializerMixin, db.Model):
    __tablename__ = 'optin_forms'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    heading = Column(String(255))
    is_active = Column(Boolean, nullable=False, default=True)
    tags_to_assign = Column(JSON)
    sequence_id = Column(String(36), ForeignKey('email_sequences.id'))
    success_message = Column(Text)
    redirect_url = Column(String(500))
    created_at = Column(DateTime, default=datetime.utcnow)


class OptinFormSubmission(SerializerMixin, db.Model):
    __tablename__ = 'optin_form_submissions'

    id = Column(String(36), primary_key=True, default=new_id)
    form_id = Column(String(36), ForeignKey('optin_forms.id'), nullable=False)
    contact_id = Column(String(36))
    email = Column(String(255), nullable=False)
    form_data = Column(JSON)
    ip_address = Column(String(64))
    user_agent = Column(String(500))
    submitted_at = Column(DateTime, default=datetime.utcnow)


class EmailSequence(SerializerMixin, db.Model):
    __tablename__ = 'email_sequences'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    trigger_type = Column(String(30), nullable=False)  # form_submit, tag_added, cart_abandonment, manual
    trigger_config = Column(JSON)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    steps = relationship('EmailSequenceStep', order_by='EmailSequenceStep.step_order',
                         back_populates='sequence')


class EmailSequenceTemplate(SerializerMixin, db.Model):
    __tablename__ = 'email_sequence_templates'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    body_html = Column(Text, nullable=False)
    body_text = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


class EmailSequenceStep(SerializerMixin, db.Model):
    __tablename__ = 'email_sequence_steps'
    __table_args__ = (UniqueConstraint('sequence_id', 'step_order'),)

    id = Column(String(36), primary_key=True, default=new_id)
    sequence_id = Column(String(36), ForeignKey('email_sequences.id'), nullable=False)
    template_id = Column(String(36), ForeignKey('email_sequence_templates.id'))
    step_order = Column(Integer, nullable=False)
    delay_minutes = Column(Integer, nullable=False, default=0)

    sequence = relationship('EmailSequence', back_populates='steps')
    template = relationship('EmailSequenceTemplate')


class EmailSequenceEnrollment(SerializerMixin, db.Model):
    __tablename__ = 'email_sequence_enrollments'

    id = Column(String(36), primary_key=True, default=new_id)
    sequence_id = Column(String(36), ForeignKey('email_sequences.id'), nullable=False, index=True)
    contact_id = Column(String(36), ForeignKey('email_contacts.id'))
    user_id = Column(String(36))
    email = Column(String(255), nullable=False, index=True)
    status = Column(String(20), nullable=False, default='active')  # active, paused, completed
    current_step = Column(Integer, nullable=False, default=0)
    next_email_at = Column(DateTime, index=True)
    metadata_ = Column('metadata', JSON)
    enrolled_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)

    sequence = relationship('EmailSequence')
    contact = relationship('EmailContact')


class CartAbandonment(SerializerMixin, db.Model):
    __tablename__ = 'cart_abandonment'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36))
    email = Column(String(255))
    cart_items = Column(JSON, nullable=False, default=list)
    cart_total = Column(Float)
    currency = Column(String(3))
    abandoned_at = Column(DateTime, default=datetime.utcnow)
    recovered_at = Column(DateTime)
    recovery_email_sent = Column(Boolean, default=False)
    sequence_enrollment_id = Column(String(36))


# Content

class BlogPost(SerializerMixin, db.Model):
    __tablename__ = 'blog_posts'

    id = Column(String(36), primary_key=True, default=new_id)
    slug = Column(String(255), nullable=False, unique=True)
    title = Column(String(500), nullable=False)
    content = Column(Text)
    excerpt = Column(Text)
    featured_image = Column(String(1000))
    author_name = Column(String(255))
    published_at = Column(DateTime)
    categories = Column(JSON)
    reading_time = Column(Integer)
    meta_title = Column(String(255))
    meta_description = Column(String(500))
    is_published = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
