"""
Database Schemas for the Course Platform

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name. For example, Course -> "course" collection.
Identifiers are stored as ObjectId and rendered as strings by the API.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class Course(BaseModel):
    """
    Courses collection schema
    Collection name: "course"

    Documents also hold "video_order", the ordered list of video ids. It starts
    empty and only changes through the course ordering operations.
    """
    title: str = Field(..., description="Course title")
    subtitle: Optional[str] = Field(None, description="Short subtitle")
    description: Optional[str] = Field(None, description="Detailed description")
    thumbnail_url: Optional[str] = Field(None, description="Poster/thumbnail image URL")
    is_paid: bool = Field(False, description="Whether the course needs a subscription")
    skills: List[str] = Field(default_factory=list, description="Skills taught")
    author: Optional[str] = Field(None, description="Author display name")


class Video(BaseModel):
    """
    Videos collection schema
    Collection name: "video"
    """
    title: str = Field(..., description="Video title")
    description: Optional[str] = Field(None, description="Video description")
    url: str = Field(..., description="Object storage URL of the video file")
    thumbnail: Optional[str] = Field(None, description="Object storage URL of the thumbnail")
    duration: int = Field(0, ge=0, description="Length in seconds")
    is_paid: bool = Field(False, description="Whether watching needs a subscription")
    course_id: str = Field(..., description="Owning course ObjectId as string")


class Subscription(BaseModel):
    """
    Subscriptions collection schema
    Collection name: "subscription"
    """
    user_id: str = Field(..., description="Subscriber ObjectId as string")
    product_id: Optional[str] = Field(None, description="Subscribed product")
    status: str = Field(..., description="active, trial, canceled, expired or the provider status")
    plan: Optional[str] = Field(None, description="Billing interval, e.g. month or year")
    current_period_end: Optional[datetime] = Field(None, description="End of the paid period")
    cancel_at_period_end: bool = Field(False, description="Lapses at period end")
    auto_renew: bool = Field(True, description="Renews automatically")
    payment_method_id: Optional[str] = Field(None, description="Provider payment method")
    customer_id: Optional[str] = Field(None, description="Provider customer id")
    subscription_id: Optional[str] = Field(None, description="Provider subscription id")


class Payment(BaseModel):
    """
    Payments collection schema
    Collection name: "payment"
    """
    user_id: str = Field(..., description="Paying user ObjectId as string")
    gateway: str = Field(..., description="Payment provider name")
    transaction_id: str = Field(..., description="Provider transaction id")
    amount: int = Field(..., ge=0, description="Amount in minor currency units")
    currency: str = Field(..., description="ISO currency code")
    status: str = Field("completed", description="completed, refunded, failed")
    timestamp: datetime = Field(..., description="When the payment was recorded")


class RegionalPricing(BaseModel):
    """
    Regional pricing collection schema
    Collection name: "regional_pricing"
    """
    region_code: str = Field(..., description="Region code, e.g. US or IN")
    currency: str = Field(..., description="ISO currency code")
    monthly_price: int = Field(..., gt=0, description="Monthly price in minor currency units")
    yearly_price: int = Field(..., gt=0, description="Yearly price in minor currency units")
    currency_symbol: Optional[str] = Field(None, description="Display symbol, e.g. $")


class WatchHistory(BaseModel):
    """
    Watch history collection schema
    Collection name: "watch_history"

    One document per (user_id, video_id) pair.
    """
    user_id: str = Field(..., description="Viewer ObjectId as string")
    video_id: str = Field(..., description="Watched video ObjectId as string")
    progress_seconds: int = Field(0, ge=0, description="Playback position in seconds")
    last_watched_at: datetime = Field(..., description="When progress was last reported")
