# Reference: https://github.com/torvalds/linux/blob/master/fs/ext4/ext4.h
# Reference: https://github.com/torvalds/linux/blob/master/fs/ext4/ext4_extents.h

from dissect import cstruct


ext_def = """
typedef uint8 __u8;
typedef uint16 __le16;
typedef uint32 __le32;

/*
 * Special inode numbers
 */
#define EXT2_BAD_INO            1       /* Bad blocks inode */
#define EXT2_ROOT_INO           2       /* Root inode */

/*
 * Constants relative to the data blocks
 */
#define EXT2_NDIR_BLOCKS        12
#define EXT2_IND_BLOCK          12
#define EXT2_DIND_BLOCK         13
#define EXT2_TIND_BLOCK         14
#define EXT2_N_BLOCKS           15

/*
 * Inode flags
 */
#define EXT4_EXTENTS_FL         0x00080000  /* Inode uses extents */
#define EXT4_INLINE_DATA_FL     0x10000000  /* Inode has inline data */

/*
 * Structure of an inode on the disk. Only the fields of the base record
 * and the fixed part of the extra area are declared, the remainder of the
 * 256-byte record is padding for our purposes.
 */
struct ext4_inode {
    __le16  i_mode;                     /* File mode */
    __le16  i_uid;                      /* Low 16 bits of Owner Uid */
    __le32  i_size_lo;                  /* Size in bytes */
    __le32  i_atime;                    /* Access time */
    __le32  i_ctime;                    /* Inode Change time */
    __le32  i_mtime;                    /* Modification time */
    __le32  i_dtime;                    /* Deletion Time */
    __le16  i_gid;                      /* Low 16 bits of Group Id */
    __le16  i_links_count;              /* Links count */
    __le32  i_blocks_lo;                /* Blocks count, 512-byte units */
    __le32  i_flags;                    /* File flags */
    __le32  l_i_version;
    char    i_block[60];                /* Pointers to blocks, or extent tree root */
    __le32  i_generation;               /* File version (for NFS) */
    __le32  i_file_acl_lo;              /* File ACL */
    __le32  i_size_high;
    __le32  i_obso_faddr;               /* Obsoleted fragment address */
    char    osd2[12];
    __le16  i_extra_isize;
    __le16  i_checksum_hi;
    __le32  i_ctime_extra;
    __le32  i_mtime_extra;
    __le32  i_atime_extra;
    __le32  i_crtime;
    __le32  i_crtime_extra;
    __le32  i_version_hi;
    __le32  i_projid;
    char    i_pad[96];
};

/*
 * Each block (leaves and indexes), even inode-stored has header.
 */
#define EXT4_EXT_MAGIC          0xf30a
#define EXT4_EXT_MAX_DEPTH      5
#define EXT_INIT_MAX_LEN        32768

struct ext4_extent_header {
    __le16  eh_magic;                   /* probably will support different formats */
    __le16  eh_entries;                 /* number of valid entries */
    __le16  eh_max;                     /* capacity of store in entries */
    __le16  eh_depth;                   /* has tree real underlying blocks? */
    __le32  eh_generation;              /* generation of the tree */
};

/*
 * This is the extent on-disk structure.
 * It's used at the bottom of the tree.
 */
struct ext4_extent {
    __le32  ee_block;                   /* first logical block extent covers */
    __le16  ee_len;                     /* number of blocks covered by extent */
    __le16  ee_start_hi;                /* high 16 bits of physical block */
    __le32  ee_start_lo;                /* low 32 bits of physical block */
};

/*
 * This is index on-disk structure.
 * It's used at all the levels except the bottom.
 */
struct ext4_extent_idx {
    __le32  ei_block;                   /* index covers logical blocks from 'block' */
    __le32  ei_leaf_lo;                 /* pointer to the physical block of the next level */
    __le16  ei_leaf_hi;                 /* high 16 bits of physical block */
    __le16  ei_unused;
};
"""

c_ext = cstruct.cstruct()
c_ext.load(ext_def)
