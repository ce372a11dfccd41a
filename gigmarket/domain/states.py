from enum import StrEnum, auto


class JobStatus(StrEnum):
    OPEN = auto()            # Posted, accepting applications
    ASSIGNED = auto()        # Application accepted, worker set
    IN_PROGRESS = auto()     # Worker started on site
    COMPLETED = auto()       # Worker finished; funds may be released
    CANCELED = auto()        # Poster canceled
    PAYMENT_FAILED = auto()  # Transfer to worker failed, manually retriable


class ApplicationStatus(StrEnum):
    PENDING = auto()
    ACCEPTED = auto()
    REJECTED = auto()
    COMPLETED = auto()
    CANCELLED = auto()


class PaymentStatus(StrEnum):
    PENDING = auto()
    COMPLETED = auto()
    FAILED = auto()
    REVERSED = auto()


class PaymentType(StrEnum):
    PAYMENT = auto()   # Poster -> platform charge
    TRANSFER = auto()  # Platform -> worker payout


class EarningStatus(StrEnum):
    PENDING = auto()
    PAID = auto()
    FAILED = auto()
    REVERSED = auto()


class AccountType(StrEnum):
    WORKER = auto()
    POSTER = auto()
    PENDING = auto()


class ConnectAccountStatus(StrEnum):
    PENDING = auto()
    ACTIVE = auto()
    RESTRICTED = auto()
    LIMITED = auto()
    DEAUTHORIZED = auto()


class NotificationType(StrEnum):
    NEW_APPLICATION = auto()
    APPLICATION_STATUS_UPDATED = auto()
    JOB_STARTED = auto()
    JOB_COMPLETED = auto()
    JOB_CANCELED = auto()
    PAYMENT_RECEIVED = auto()
    PAYMENT_SENT = auto()
    PAYMENT_FAILED = auto()
    PAYMENT_REVERSED = auto()
    STRIPE_CONNECT_UPDATE = auto()
    LOCATION_VERIFICATION_WARNING = auto()
    NEW_MESSAGE = auto()


class JobEvent(StrEnum):
    CREATED = auto()
    ASSIGNED = auto()
    STARTED = auto()
    COMPLETED = auto()
    CANCELED = auto()
    FUNDS_RELEASED = auto()
    PAYMENT_FAILED = auto()
    TRANSFER_REVERSED = auto()


class Decision(StrEnum):
    ACCEPT = auto()
    REJECT = auto()


JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.OPEN: frozenset({JobStatus.ASSIGNED, JobStatus.CANCELED}),
    JobStatus.ASSIGNED: frozenset({JobStatus.IN_PROGRESS, JobStatus.CANCELED}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED, JobStatus.CANCELED}),
    JobStatus.COMPLETED: frozenset({JobStatus.PAYMENT_FAILED}),
    JobStatus.PAYMENT_FAILED: frozenset({JobStatus.COMPLETED}),
    JobStatus.CANCELED: frozenset(),
}

APPLICATION_TRANSITIONS: dict[ApplicationStatus, frozenset[ApplicationStatus]] = {
    ApplicationStatus.PENDING: frozenset({ApplicationStatus.ACCEPTED, ApplicationStatus.REJECTED}),
    ApplicationStatus.ACCEPTED: frozenset({ApplicationStatus.COMPLETED, ApplicationStatus.CANCELLED}),
    ApplicationStatus.REJECTED: frozenset(),
    ApplicationStatus.COMPLETED: frozenset(),
    ApplicationStatus.CANCELLED: frozenset(),
}

# Applications that still block a second application from the same worker
ACTIVE_APPLICATION_STATUSES = frozenset({ApplicationStatus.PENDING, ApplicationStatus.ACCEPTED})

TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.REVERSED})


def can_transition_job(current: JobStatus, target: JobStatus) -> bool:
    return target in JOB_TRANSITIONS.get(JobStatus(current), frozenset())


def can_transition_application(current: ApplicationStatus, target: ApplicationStatus) -> bool:
    return target in APPLICATION_TRANSITIONS.get(ApplicationStatus(current), frozenset())
