from invoiceflow.auth.token import TokenPayload, get_current_user, verify_token
from invoiceflow.auth.rbac import has_role, require_role
from invoiceflow.auth.users import StaticUserDirectory, User, UserDirectory
