from sqlalchemy import Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


LOAN_BORROWED = "Borrowed"
LOAN_OVERDUE = "Overdue"
LOAN_RETURNED = "Returned"
LOAN_STATES = {LOAN_BORROWED, LOAN_OVERDUE, LOAN_RETURNED}
ACTIVE_LOAN_STATES = {LOAN_BORROWED, LOAN_OVERDUE}

REQUEST_PENDING = "Pending"
REQUEST_APPROVED = "Approved"
REQUEST_RELEASED = "Released"
REQUEST_REJECTED = "Rejected"
REQUEST_RETURNED = "Returned"
REQUEST_STATES = {REQUEST_PENDING, REQUEST_APPROVED, REQUEST_RELEASED, REQUEST_REJECTED, REQUEST_RETURNED}


class InventoryItem(Base):
    __tablename__ = "InventoryItems"
    __table_args__ = (
        CheckConstraint("TotalQuantity >= 0", name="ck_item_total_nonnegative"),
        CheckConstraint("InUseQuantity >= 0", name="ck_item_in_use_nonnegative"),
        CheckConstraint("BorrowCap IS NULL OR BorrowCap >= 0", name="ck_item_cap_nonnegative"),
    )

    ItemID = Column(Integer, primary_key=True)
    ShortCode = Column(String(40), nullable=False, unique=True)
    ItemName = Column(String(255), nullable=False)
    Category = Column(String(100))
    Unit = Column(String(40))
    Location = Column(String(255))
    Condition = Column(String(40))
    Description = Column(String(1000))
    SafetyNotes = Column(String(1000))
    IsConsumable = Column(Boolean, default=False)
    TotalQuantity = Column(Integer, nullable=False, default=0)
    InUseQuantity = Column(Integer, nullable=False, default=0)
    BorrowCap = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    LoanRecords = relationship("LoanRecord", back_populates="Item")


class LoanRecord(Base):
    __tablename__ = "LoanRecords"
    __table_args__ = (
        CheckConstraint("Quantity >= 1", name="ck_loan_quantity_positive"),
    )

    LoanID = Column(Integer, primary_key=True)
    ItemID = Column(Integer, ForeignKey("InventoryItems.ItemID"), nullable=False)
    BorrowerName = Column(String(255), nullable=False)
    BorrowerID = Column(String(100))
    Quantity = Column(Integer, nullable=False)
    SpecificUnitCode = Column(String(60))
    # Mirrors SpecificUnitCode while the loan is active; NULLs never collide.
    ActiveUnitCode = Column(String(60), unique=True)
    BorrowedOn = Column(Date, nullable=False)
    DueOn = Column(Date, nullable=False)
    ReturnedOn = Column(Date)
    Status = Column(String(20), nullable=False, default=LOAN_BORROWED)
    GoodQuantity = Column(Integer)
    DefectiveQuantity = Column(Integer)
    DisposedQuantity = Column(Integer)
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Item = relationship("InventoryItem", back_populates="LoanRecords")


class BorrowRequest(Base):
    __tablename__ = "BorrowRequests"

    RequestID = Column(Integer, primary_key=True)
    ReferenceCode = Column(String(20), nullable=False, unique=True)
    BorrowerName = Column(String(255), nullable=False)
    BorrowerID = Column(String(100))
    RequestedOn = Column(Date, nullable=False)
    DesiredReturnOn = Column(Date, nullable=False)
    Status = Column(String(20), nullable=False, default=REQUEST_PENDING)
    AdminNotes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Lines = relationship(
        "BorrowRequestLine",
        back_populates="Request",
        cascade="all, delete-orphan",
        order_by="BorrowRequestLine.LineID",
    )


class BorrowRequestLine(Base):
    __tablename__ = "BorrowRequestLines"
    __table_args__ = (
        CheckConstraint("Quantity >= 1", name="ck_request_line_quantity_positive"),
    )

    LineID = Column(Integer, primary_key=True)
    RequestID = Column(Integer, ForeignKey("BorrowRequests.RequestID"), nullable=False)
    ItemID = Column(Integer, ForeignKey("InventoryItems.ItemID"), nullable=False)
    Quantity = Column(Integer, nullable=False)
    # Non-owning back-reference; deleting the loan does not touch the request.
    LinkedLoanID = Column(Integer, index=True)

    Request = relationship("BorrowRequest", back_populates="Lines")
    Item = relationship("InventoryItem")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    LoanID = Column(Integer)
    RequestID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
