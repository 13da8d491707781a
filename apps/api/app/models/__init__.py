from app.crm.models import (
	CRMActivity,
	CRMContact,
	CRMCustomer,
	CRMInvoice,
	CRMLead,
	CRMLeadTag,
	CRMNotification,
	CRMTag,
	CRMUser,
)

__all__ = [
	"CRMActivity",
	"CRMContact",
	"CRMCustomer",
	"CRMInvoice",
	"CRMLead",
	"CRMLeadTag",
	"CRMNotification",
	"CRMTag",
	"CRMUser",
]
