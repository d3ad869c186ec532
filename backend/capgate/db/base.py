# Import all the models, so that Base.metadata holds every table before the
# table allow-list is derived from it
from capgate.db.base_class import Base  # noqa

from capgate.models.user import User  # noqa
from capgate.models.power import PowerData, EnvironmentalData  # noqa
from capgate.models.equipment import Equipment, EquipmentEfficiency, MaintenanceLog  # noqa
from capgate.models.agent import AgentConversation, AgentMessage, AgentTask  # noqa
from capgate.core.audit import CapabilityAuditLog  # noqa
