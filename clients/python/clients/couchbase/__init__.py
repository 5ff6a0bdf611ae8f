from .config import (
    USERNAME,
    PASSWORD,
    DEFAULT_BUCKET_NAME,
    DEFAULT_SCOPE_NAME,
    HOST,
    PROTOCOL,
    auth,
    get_cluster,
    check_connection
)
from .keyspace import (
    Condition,
    Keyspace,
    build_order_by,
    build_where,
    get_keyspace,
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    DataT,
    T
)
from .indexes import (
    INDEXES,
    IndexSpec,
    create_index_statement,
    ensure_indexes,
)

from couchbase.exceptions import DocumentNotFoundException, DocumentExistsException, CASMismatchException
